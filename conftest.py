import hashlib
import math
import re
from dataclasses import dataclass
from pathlib import Path

import pytest

from roleforge.config import ConfigSource
from roleforge.memory.retriever import MemoryRetriever
from roleforge.memory.store import MemoryStore
from roleforge.models import Arc, Campaign, Character, Scene, World
from roleforge.storage import Storage


# ---------------------------------------------------------------------------
# StubLLM: dispatches by stage name, independent queue per stage
# ---------------------------------------------------------------------------

class StubLLM:
    """Deterministic LLM stand-in for tests.

    Provide a dict mapping stage name → list of responses (in call order).
    A response that is an Exception instance is raised instead of returned.
    Raises if a stage is called more times than responses were provided.
    """

    def __init__(self, responses: dict[str, list]) -> None:
        self._queues: dict[str, list] = {k: list(v) for k, v in responses.items()}
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, stage: str, prompt: str) -> str:
        self.calls.append((stage, prompt))
        queue = self._queues.get(stage)
        if not queue:
            raise AssertionError(
                f"StubLLM: unexpected call to stage={stage!r} "
                f"(no responses queued). calls so far: {self.calls}"
            )
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def prompts(self, stage: str) -> list[str]:
        return [p for s, p in self.calls if s == stage]

    def assert_exhausted(self) -> None:
        """Assert every queued response was consumed."""
        leftover = {k: v for k, v in self._queues.items() if v}
        if leftover:
            raise AssertionError(f"StubLLM: unused responses remain: {leftover}")


# ---------------------------------------------------------------------------
# HashEmbedder: bag-of-words hashed into a fixed vector, no network
# ---------------------------------------------------------------------------

class HashEmbedder:
    """Identical texts embed identically; shared words raise similarity."""

    DIM = 64

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        vector = [0.0] * self.DIM
        vector[0] = 1.0  # keeps every vector non-zero
        for token in re.findall(r"\w+", text.lower()):
            digest = int(hashlib.md5(token.encode()).hexdigest(), 16)
            vector[1 + digest % (self.DIM - 1)] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector]


class FailingEmbedder:
    async def embed(self, text: str) -> list[float]:
        raise RuntimeError("embedding backend down")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@dataclass
class SceneSetup:
    world: World
    campaign: Campaign
    arc: Arc
    scene: Scene
    alice: Character
    bob: Character


@pytest.fixture
def storage(tmp_path: Path) -> Storage:
    return Storage(tmp_path / "data")


@pytest.fixture
def config(tmp_path: Path) -> ConfigSource:
    return ConfigSource(tmp_path / "data" / "config.json")


@pytest.fixture
def embedder() -> HashEmbedder:
    return HashEmbedder()


@pytest.fixture
def memory_store(tmp_path: Path, embedder: HashEmbedder) -> MemoryStore:
    return MemoryStore(
        tmp_path / "vectors",
        embedder,
        min_similarity=0.0,
        audit_log=tmp_path / "audit.jsonl",
    )


@pytest.fixture
def retriever(memory_store: MemoryStore, config: ConfigSource, storage: Storage) -> MemoryRetriever:
    return MemoryRetriever(memory_store, config, storage, storage, storage)


@pytest.fixture
def setup(storage: Storage) -> SceneSetup:
    world = storage.create_world("Aster", "A drifting archipelago of floating isles.")
    campaign = storage.create_campaign(world.id, "The Long Fall", "Find the source of the falling isles.")
    arc = storage.create_arc(campaign.id, "Harbor", "Arrival at Skyport.")
    alice = Character(id="alice", name="Alice", description="A cheerful cartographer.", world_id=world.id)
    bob = Character(id="bob", name="Bob", description="A gruff dockmaster.", world_id=world.id)
    storage.save_character(alice)
    storage.save_character(bob)
    scene = storage.create_scene(
        arc.id,
        "Skyport docks",
        description="Ships creak against their moorings.",
        location="Skyport",
        active_characters=["alice", "bob"],
    )
    return SceneSetup(world, campaign, arc, scene, alice, bob)
