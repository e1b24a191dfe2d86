"""Scoped long-term memory on top of a persistent Chroma index.

One Chroma collection per memory scope. Collections are opened lazily: on the
first write to a scope, or on the first query/count against a scope that
already exists on disk. Nothing is created eagerly.

Every public method degrades instead of raising: an unavailable index or
embedding backend yields empty results / False. The single exception is
`BulkDeleteRejected`, raised by delete_by_metadata before anything is removed.

Blocking Chroma calls run in worker threads. Mutations of one scope hold that
scope's asyncio.Lock, so writes to a collection are single-writer.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
from pathlib import Path
from typing import Any

# Disable Chroma telemetry before importing chromadb
os.environ.setdefault("ANONYMIZED_TELEMETRY", "false")

import chromadb
from chromadb.config import Settings

from roleforge.embedding import Embedder
from roleforge.models import DeleteResult, MemoryHit, utc_now

logger = logging.getLogger(__name__)

DEFAULT_BULK_DELETE_THRESHOLD = 50
DEFAULT_MIN_SIMILARITY = 0.7

_PARTICIPANT_SCOPE = re.compile(r"^world_(\d+)_char_(.+)$")
_SHARED_SCOPE = re.compile(r"^world_(\d+)_multi$")
_VALID_COLLECTION = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]{1,61}[a-zA-Z0-9]$")
_JSON_FIELDS_KEY = "_json_fields"


class BulkDeleteRejected(RuntimeError):
    """Raised when a metadata delete would remove too many entries without confirm."""

    def __init__(self, matched: int, threshold: int) -> None:
        super().__init__(
            f"Refusing to delete {matched} memories (threshold {threshold}) without confirm=True"
        )
        self.matched = matched
        self.threshold = threshold


# ---------------------------------------------------------------------------
# Scope naming
# ---------------------------------------------------------------------------

def participant_scope(world_id: int | str, participant_id: str) -> str:
    return f"world_{world_id}_char_{participant_id}"


def shared_scope(world_id: int | str) -> str:
    return f"world_{world_id}_multi"


def parse_participant_scope(scope: str) -> tuple[int, str] | None:
    match = _PARTICIPANT_SCOPE.match(scope)
    if not match:
        return None
    return int(match.group(1)), match.group(2)


def is_shared_scope(scope: str) -> bool:
    return _SHARED_SCOPE.match(scope) is not None


def collection_name(scope: str) -> str:
    """Map a scope to a valid Chroma collection name.

    Valid scopes are used verbatim; anything else gets a sanitized prefix and a
    hash suffix so distinct scopes never collide.
    """
    if _VALID_COLLECTION.match(scope) and ".." not in scope:
        return scope
    slug = re.sub(r"[^a-zA-Z0-9]+", "_", scope).strip("_")[:48] or "scope"
    digest = hashlib.sha1(scope.encode("utf-8")).hexdigest()[:12]
    return f"{slug}_{digest}"


# ---------------------------------------------------------------------------
# Metadata encoding (Chroma only stores scalar values)
# ---------------------------------------------------------------------------

def encode_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    encoded: dict[str, Any] = {}
    json_fields: list[str] = []
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, dict)):
            encoded[key] = json.dumps(value)
            json_fields.append(key)
        elif isinstance(value, (str, int, float, bool)):
            encoded[key] = value
        else:
            encoded[key] = str(value)
    if json_fields:
        encoded[_JSON_FIELDS_KEY] = ",".join(json_fields)
    return encoded


def decode_metadata(metadata: dict[str, Any] | None) -> dict[str, Any]:
    decoded = dict(metadata or {})
    fields = decoded.pop(_JSON_FIELDS_KEY, "")
    for key in filter(None, str(fields).split(",")):
        raw = decoded.get(key)
        if isinstance(raw, str):
            try:
                decoded[key] = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("Metadata field %s is not JSON, leaving as string", key)
    return decoded


def normalize_where_filter(flt: dict[str, Any] | None) -> dict[str, Any] | None:
    """Turn {"k": v, ...} into Chroma's operator syntax."""
    if not flt:
        return None
    if any(k.startswith("$") for k in flt):
        return flt
    clauses: list[dict[str, Any]] = []
    for key, value in flt.items():
        if isinstance(value, dict) and any(str(k).startswith("$") for k in value):
            clauses.append({key: value})
        elif isinstance(value, (list, tuple, dict)):
            clauses.append({key: {"$eq": json.dumps(value)}})
        else:
            clauses.append({key: {"$eq": value}})
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

class MemoryStore:
    def __init__(
        self,
        persist_dir: Path,
        embedder: Embedder,
        *,
        bulk_delete_threshold: int = DEFAULT_BULK_DELETE_THRESHOLD,
        min_similarity: float = DEFAULT_MIN_SIMILARITY,
        audit_log: Path | None = None,
    ) -> None:
        self._persist_dir = persist_dir
        self._embedder = embedder
        self.bulk_delete_threshold = bulk_delete_threshold
        self._min_similarity = min_similarity
        self._audit_log = audit_log
        self._client: Any = None
        self._collections: dict[str, Any] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, scope: str) -> asyncio.Lock:
        lock = self._locks.get(scope)
        if lock is None:
            lock = self._locks[scope] = asyncio.Lock()
        return lock

    async def _get_client(self) -> Any:
        if self._client is None:
            self._persist_dir.mkdir(parents=True, exist_ok=True)
            self._client = await asyncio.to_thread(
                chromadb.PersistentClient,
                path=str(self._persist_dir),
                settings=Settings(anonymized_telemetry=False),
            )
            logger.info("Chroma PersistentClient ready at %s", self._persist_dir)
        return self._client

    async def _collection_names(self) -> list[str]:
        client = await self._get_client()
        listed = await asyncio.to_thread(client.list_collections)
        # Older clients return Collection objects, newer ones return names
        return [getattr(c, "name", c) for c in listed]

    async def _collection(self, scope: str, *, create: bool) -> Any | None:
        cached = self._collections.get(scope)
        if cached is not None:
            return cached
        client = await self._get_client()
        name = collection_name(scope)
        if create:
            collection = await asyncio.to_thread(
                client.get_or_create_collection,
                name=name,
                metadata={"hnsw:space": "cosine", "scope": scope},
                embedding_function=None,
            )
        else:
            if name not in await self._collection_names():
                return None
            collection = await asyncio.to_thread(
                client.get_collection, name=name, embedding_function=None
            )
        self._collections[scope] = collection
        return collection

    def _record_audit(self, flt: dict[str, Any], result: DeleteResult) -> None:
        if self._audit_log is None:
            return
        entry = {
            "timestamp": utc_now(),
            "filter": flt,
            "scopes": result.scopes,
            "deletedCount": result.deleted,
            "deletedIds": result.ids,
        }
        try:
            self._audit_log.parent.mkdir(parents=True, exist_ok=True)
            with self._audit_log.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError:
            logger.warning("Could not append to audit log %s", self._audit_log, exc_info=True)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, scope: str, memory_id: str, text: str, metadata: dict[str, Any]) -> bool:
        """Embed and upsert one entry. Re-adding an id replaces it."""
        meta = encode_metadata({**metadata, "stored_at": utc_now()})
        try:
            vector = await self._embedder.embed(text)
        except Exception:
            logger.warning("Embedding failed for memory %s in %s", memory_id, scope, exc_info=True)
            return False

        async with self._lock_for(scope):
            try:
                collection = await self._collection(scope, create=True)
                await asyncio.to_thread(
                    collection.upsert,
                    ids=[memory_id],
                    embeddings=[vector],
                    documents=[text],
                    metadatas=[meta],
                )
            except Exception:
                logger.warning("Vector index write failed for %s", scope, exc_info=True)
                return False
        logger.debug("stored memory %s in %s", memory_id, scope)
        return True

    async def delete(self, scope: str, memory_id: str) -> bool:
        async with self._lock_for(scope):
            try:
                collection = await self._collection(scope, create=False)
                if collection is None:
                    return False
                await asyncio.to_thread(collection.delete, ids=[memory_id])
            except Exception:
                logger.warning("Delete of %s from %s failed", memory_id, scope, exc_info=True)
                return False
        return True

    async def clear(self, scope: str) -> bool:
        """Remove every entry in a scope. The scope itself may remain."""
        async with self._lock_for(scope):
            try:
                collection = await self._collection(scope, create=False)
                if collection is None:
                    return True
                existing = await asyncio.to_thread(collection.get, include=["metadatas"])
                ids = existing.get("ids") or []
                if ids:
                    await asyncio.to_thread(collection.delete, ids=list(ids))
            except Exception:
                logger.warning("Clearing %s failed", scope, exc_info=True)
                return False
        return True

    async def delete_scope(self, scope: str) -> bool:
        async with self._lock_for(scope):
            try:
                if await self._collection(scope, create=False) is None:
                    return False
                client = await self._get_client()
                await asyncio.to_thread(client.delete_collection, name=collection_name(scope))
            except Exception:
                logger.warning("Deleting scope %s failed", scope, exc_info=True)
                return False
            finally:
                self._collections.pop(scope, None)
        return True

    async def delete_by_metadata(
        self,
        flt: dict[str, Any],
        scope: str | None = None,
        *,
        dry_run: bool = False,
        confirm: bool = False,
    ) -> DeleteResult:
        """Delete entries whose metadata matches every key of `flt`.

        Without a scope, every known scope is searched. The match set is
        computed first; if it exceeds the bulk threshold and `confirm` is not
        set, BulkDeleteRejected is raised and nothing is deleted.
        """
        scopes = [scope] if scope else await self.list_scopes()
        where = normalize_where_filter(flt)

        matches: dict[str, list[str]] = {}
        for s in scopes:
            try:
                collection = await self._collection(s, create=False)
                if collection is None:
                    continue
                found = await asyncio.to_thread(collection.get, where=where, include=["metadatas"])
            except Exception:
                logger.warning("Metadata lookup in %s failed", s, exc_info=True)
                continue
            ids = list(found.get("ids") or [])
            if ids:
                matches[s] = ids

        matched = sum(len(ids) for ids in matches.values())
        all_ids = [i for ids in matches.values() for i in ids]
        if dry_run:
            return DeleteResult(
                matched=matched, deleted=0, scopes=list(matches), ids=all_ids, dry_run=True
            )
        if matched > self.bulk_delete_threshold and not confirm:
            raise BulkDeleteRejected(matched, self.bulk_delete_threshold)

        deleted_ids: list[str] = []
        for s, ids in matches.items():
            async with self._lock_for(s):
                try:
                    collection = await self._collection(s, create=False)
                    await asyncio.to_thread(collection.delete, ids=ids)
                except Exception:
                    logger.warning("Bulk delete in %s failed", s, exc_info=True)
                    continue
            deleted_ids.extend(ids)

        result = DeleteResult(
            matched=matched, deleted=len(deleted_ids), scopes=list(matches), ids=deleted_ids
        )
        self._record_audit(flt, result)
        logger.info("deleted %d memories matching %s across %d scopes",
                    result.deleted, flt, len(result.scopes))
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query(
        self,
        scope: str,
        text: str,
        top_k: int = 5,
        min_similarity: float | None = None,
    ) -> list[MemoryHit]:
        """Nearest neighbors of `text` in one scope, at or above min_similarity."""
        threshold = self._min_similarity if min_similarity is None else min_similarity
        try:
            collection = await self._collection(scope, create=False)
            if collection is None:
                return []
            count = await asyncio.to_thread(collection.count)
            if count == 0 or top_k <= 0:
                return []
            vector = await self._embedder.embed(text)
            result = await asyncio.to_thread(
                collection.query,
                query_embeddings=[vector],
                n_results=min(top_k, count),
                include=["documents", "metadatas", "distances"],
            )
        except Exception:
            logger.warning("Vector query against %s failed", scope, exc_info=True)
            return []

        ids = (result.get("ids") or [[]])[0]
        documents = (result.get("documents") or [[]])[0]
        metadatas = (result.get("metadatas") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]

        hits: list[MemoryHit] = []
        for i, memory_id in enumerate(ids):
            similarity = 1.0 - float(distances[i]) if i < len(distances) else 0.0
            if similarity < threshold:
                continue
            hits.append(MemoryHit(
                id=memory_id,
                text=documents[i] if i < len(documents) and documents[i] else "",
                similarity=similarity,
                metadata=decode_metadata(metadatas[i] if i < len(metadatas) else None),
            ))
        logger.debug("query %s returned %d/%d hits", scope, len(hits), len(ids))
        return hits

    async def scope_exists(self, scope: str) -> bool:
        try:
            return await self._collection(scope, create=False) is not None
        except Exception:
            logger.warning("Existence check for %s failed", scope, exc_info=True)
            return False

    async def count(self, scope: str) -> int:
        try:
            collection = await self._collection(scope, create=False)
            if collection is None:
                return 0
            return int(await asyncio.to_thread(collection.count))
        except Exception:
            logger.warning("Count for %s failed", scope, exc_info=True)
            return 0

    async def list_scopes(self) -> list[str]:
        """Every scope with a collection on disk."""
        try:
            names = await self._collection_names()
        except Exception:
            logger.warning("Listing vector scopes failed", exc_info=True)
            return []
        by_name = {collection_name(s): s for s in self._collections}
        scopes: list[str] = []
        for name in names:
            if name in by_name:
                scopes.append(by_name[name])
                continue
            try:
                client = await self._get_client()
                collection = await asyncio.to_thread(
                    client.get_collection, name=name, embedding_function=None
                )
            except Exception:
                logger.warning("Could not open collection %s", name, exc_info=True)
                continue
            scope = (collection.metadata or {}).get("scope", name)
            self._collections.setdefault(scope, collection)
            scopes.append(scope)
        return sorted(scopes)

    async def stats(self) -> dict[str, int]:
        return {scope: await self.count(scope) for scope in await self.list_scopes()}
