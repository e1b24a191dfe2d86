"""Tests for MemoryRetriever: scope resolution, caps, decay and boost ranking."""

from datetime import datetime, timedelta, timezone

from conftest import HashEmbedder
from roleforge.config import ConfigSource
from roleforge.memory.retriever import MemoryRetriever
from roleforge.memory.store import MemoryStore
from roleforge.models import Character
from roleforge.storage import Storage


def _days_ago(days: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


class TestCaps:
    async def test_top_k_clamped_to_max(
        self, retriever: MemoryRetriever, memory_store: MemoryStore, config: ConfigSource, setup
    ) -> None:
        config.update({"vector": {"memoryCaps": {"maxTopK": 3}, "minSimilarity": 0.0}})
        for i in range(6):
            await memory_store.add(f"world_{setup.world.id}_char_alice", f"m{i}", f"harbor note {i}", {})
        hits = await retriever.query(
            "harbor", world_id=setup.world.id, participant_id="alice", top_k=10
        )
        assert len(hits) == 3

    async def test_query_text_truncated(
        self, retriever: MemoryRetriever, memory_store: MemoryStore,
        embedder: HashEmbedder, config: ConfigSource, setup,
    ) -> None:
        config.update({"vector": {"memoryCaps": {"maxQueryChars": 20}}})
        await memory_store.add(f"world_{setup.world.id}_char_alice", "m1", "x", {})
        await retriever.query("y" * 500, world_id=setup.world.id, participant_id="alice")
        assert len(embedder.calls[-1]) == 20

    async def test_zero_top_k_returns_nothing(self, retriever: MemoryRetriever, setup) -> None:
        assert await retriever.query("harbor", world_id=setup.world.id, top_k=0) == []


class TestScopes:
    async def test_single_scope_is_isolated_and_labelled_by_name(
        self, retriever: MemoryRetriever, memory_store: MemoryStore,
        storage: Storage, config: ConfigSource, setup,
    ) -> None:
        config.update({"vector": {"minSimilarity": 0.0}})
        w = setup.world.id
        other = storage.create_world("Other")
        await memory_store.add(f"world_{w}_char_alice", "a1", "the map is in the lighthouse", {})
        await memory_store.add(f"world_{w}_char_bob", "b1", "the map is in the lighthouse", {})
        await memory_store.add(f"world_{other.id}_char_alice", "a2", "the map is in the lighthouse", {})

        hits = await retriever.query("where is the map", world_id=w, participant_id="alice", top_k=10)
        assert [h.scope for h in hits] == [f"world_{w}_char_alice"]
        assert hits[0].participant_label == "Alice"

    async def test_world_only_fans_out_over_characters(
        self, retriever: MemoryRetriever, memory_store: MemoryStore, config: ConfigSource, setup
    ) -> None:
        config.update({"vector": {"minSimilarity": 0.0}})
        w = setup.world.id
        await memory_store.add(f"world_{w}_char_alice", "a1", "Alice saw the signal fire", {})
        await memory_store.add(f"world_{w}_char_bob", "b1", "Bob saw the signal fire too", {})
        hits = await retriever.query("signal fire", world_id=w)
        assert {h.participant_label for h in hits} == {"Alice", "Bob"}

    async def test_no_world_fans_out_over_all_worlds(
        self, retriever: MemoryRetriever, memory_store: MemoryStore,
        storage: Storage, config: ConfigSource, setup,
    ) -> None:
        config.update({"vector": {"minSimilarity": 0.0}})
        other = storage.create_world("Other")
        await memory_store.add(f"world_{setup.world.id}_char_alice", "a1", "a lantern", {})
        await memory_store.add(f"world_{other.id}_char_alice", "a2", "a lantern again", {})
        hits = await retriever.query("lantern")
        assert {h.scope for h in hits} == {
            f"world_{setup.world.id}_char_alice", f"world_{other.id}_char_alice",
        }

    async def test_shared_scope_included_and_capped(
        self, retriever: MemoryRetriever, memory_store: MemoryStore, config: ConfigSource, setup
    ) -> None:
        config.update({"vector": {"minSimilarity": 0.0}})
        w = setup.world.id
        for i in range(5):
            await memory_store.add(f"world_{w}_multi", f"s{i}", f"the tide turned {i}", {})
        hits = await retriever.query("tide", world_id=w, participant_id="alice", include_shared=True, top_k=8)
        shared = [h for h in hits if h.participant_label == "shared"]
        assert len(shared) == 3

        hits = await retriever.query("tide", world_id=w, participant_id="alice")
        assert hits == []

    async def test_retrieve_by_scope_string(
        self, retriever: MemoryRetriever, memory_store: MemoryStore, config: ConfigSource, setup
    ) -> None:
        config.update({"vector": {"minSimilarity": 0.0}})
        scope = f"world_{setup.world.id}_char_bob"
        await memory_store.add(scope, "b1", "ropes and knots", {})
        hits = await retriever.retrieve(scope, "knots")
        assert [h.scope for h in hits] == [scope]
        assert await retriever.retrieve("not-a-scope", "knots") == []

    async def test_failing_scope_is_skipped(
        self, retriever: MemoryRetriever, memory_store: MemoryStore,
        config: ConfigSource, setup, monkeypatch,
    ) -> None:
        config.update({"vector": {"minSimilarity": 0.0}})
        w = setup.world.id
        await memory_store.add(f"world_{w}_char_bob", "b1", "the bell rang", {})
        original = memory_store.query

        async def flaky(scope, *args, **kwargs):
            if scope.endswith("_alice"):
                raise RuntimeError("index corrupted")
            return await original(scope, *args, **kwargs)

        monkeypatch.setattr(memory_store, "query", flaky)
        hits = await retriever.query("bell", world_id=w)
        assert [h.participant_label for h in hits] == ["Bob"]


class TestRanking:
    async def test_decay_demotes_old_memories(
        self, retriever: MemoryRetriever, memory_store: MemoryStore, config: ConfigSource, setup
    ) -> None:
        config.update({"vector": {
            "minSimilarity": 0.0,
            "temporalDecay": {"enabled": True, "mode": "time", "halfLife": 1, "floor": 0.01},
        }})
        scope = f"world_{setup.world.id}_char_alice"
        await memory_store.add(scope, "old", "the captain's map", {"timestamp": _days_ago(30)})
        await memory_store.add(scope, "new", "the captain's map", {"timestamp": _days_ago(0)})
        hits = await retriever.query("the captain's map", world_id=setup.world.id, participant_id="alice")
        assert hits[0].metadata["timestamp"] > hits[1].metadata["timestamp"]
        assert hits[0].adjusted_score > hits[1].adjusted_score
        assert abs(hits[0].similarity - hits[1].similarity) < 1e-6

    async def test_boost_promotes_matching_memory(
        self, retriever: MemoryRetriever, memory_store: MemoryStore, config: ConfigSource, setup
    ) -> None:
        config.update({"vector": {
            "minSimilarity": 0.0,
            "conditionalRules": [{"field": "location", "match": "docks", "boost": 10}],
        }})
        scope = f"world_{setup.world.id}_char_alice"
        await memory_store.add(scope, "exact", "storm warning issued", {"location": "tower"})
        await memory_store.add(scope, "boosted", "a quiet morning", {"location": "Skyport docks"})
        hits = await retriever.query("storm warning issued", world_id=setup.world.id, participant_id="alice")
        assert hits[0].metadata["location"] == "Skyport docks"
        assert hits[0].similarity < hits[1].similarity

    async def test_message_count_decay_uses_storage_counter(
        self, retriever: MemoryRetriever, memory_store: MemoryStore,
        storage: Storage, config: ConfigSource, setup,
    ) -> None:
        config.update({"vector": {
            "minSimilarity": 0.0,
            "temporalDecay": {"enabled": True, "mode": "messageCount", "halfLife": 2, "floor": 0.01},
        }})
        scope = f"world_{setup.world.id}_char_alice"
        await memory_store.add(
            scope, "m1", "the bell", {"timestamp": _days_ago(1), "sceneId": setup.scene.id}
        )
        for i in range(4):
            storage.log_message(setup.scene.id, "Alice", f"line {i}", 1)
        [hit] = await retriever.query("the bell", world_id=setup.world.id, participant_id="alice")
        assert abs(hit.adjusted_score - hit.similarity * 0.25) < 1e-6


async def test_participant_without_world_searches_every_world(
    memory_store: MemoryStore, config: ConfigSource, storage: Storage, setup
) -> None:
    storage.save_character(Character(id="carol", name="Carol"))
    retriever = MemoryRetriever(memory_store, config, storage, storage)
    config.update({"vector": {"minSimilarity": 0.0}})
    await memory_store.add(f"world_{setup.world.id}_char_carol", "c1", "a secret", {})
    hits = await retriever.query("secret", participant_id="carol")
    assert [h.participant_label for h in hits] == ["Carol"]
