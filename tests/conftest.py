import asyncio
import hashlib
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional

import pytest

from modkeeper.api.base import CatalogClient
from modkeeper.download import DownloadOrchestrator
from modkeeper.events import EventBus, Phase, StatusEvent
from modkeeper.exceptions import VersionGoneError
from modkeeper.models import (
    Channel,
    Dependency,
    DependencyType,
    InstalledEntry,
    ResourceKind,
    Target,
    VersionRecord,
)
from modkeeper.services import CompatibilityEngine, VersionResolver
from modkeeper.storage import JsonDirectoryBackend, LocalProjectCache

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)
TARGET = Target("1.20.1", "fabric")


def sha1(content: bytes) -> str:
    return hashlib.sha1(content).hexdigest()


def dep(project_id: str, version_id: Optional[str] = None, kind: str = "required"):
    return Dependency(project_id, version_id, DependencyType(kind))


class FakeCatalog(CatalogClient):
    """内存目录：记录调用次数，可注入失败与阻塞"""

    def __init__(self, chunk_size: int = 4):
        self.versions: Dict[str, List[VersionRecord]] = {}
        # slug -> 规范 ID
        self.aliases: Dict[str, str] = {}
        self.blobs: Dict[str, bytes] = {}
        self.list_calls: Counter = Counter()
        self.fetch_calls: Counter = Counter()
        self.list_failures: Dict[str, Exception] = {}
        self.fetch_failures: Dict[str, List[Exception]] = {}
        self.gate: Optional[asyncio.Event] = None
        self.chunk_size = chunk_size
        self.active = 0
        self.peak = 0
        self.closed = False

    def add(
        self,
        project_id: str,
        version_id: str,
        content: Optional[bytes] = None,
        game_versions=("1.20.1",),
        loaders=("fabric",),
        channel: Channel = Channel.RELEASE,
        day: int = 0,
        dependencies=(),
        kind: ResourceKind = ResourceKind.MOD,
        content_hash: Optional[str] = None,
        name: Optional[str] = None,
    ) -> VersionRecord:
        if content is None:
            content = f"{project_id}:{version_id}".encode()
        locator = f"fake://{project_id}/{version_id}"
        version = VersionRecord(
            project_id=project_id,
            version_id=version_id,
            name=name or version_id,
            kind=kind,
            game_versions=game_versions,
            loaders=loaders,
            channel=channel,
            content_hash=sha1(content) if content_hash is None else content_hash,
            locator=locator,
            filename=f"{project_id}-{version_id}.jar",
            published_at=BASE_TIME + timedelta(days=day),
            dependencies=dependencies,
        )
        self.versions.setdefault(project_id, []).append(version)
        self.blobs[locator] = content
        return version

    async def canonical_id(self, project_id: str) -> str:
        return self.aliases.get(project_id, project_id)

    async def list_versions(self, project_id: str) -> AsyncIterator[VersionRecord]:
        project_id = self.aliases.get(project_id, project_id)
        self.list_calls[project_id] += 1
        if project_id in self.list_failures:
            raise self.list_failures[project_id]
        if project_id not in self.versions:
            raise VersionGoneError(f"unknown project {project_id}")
        for version in list(self.versions[project_id]):
            yield version

    async def fetch_bytes(self, locator: str) -> AsyncIterator[bytes]:
        self.fetch_calls[locator] += 1
        failures = self.fetch_failures.get(locator)
        if failures:
            raise failures.pop(0)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            content = self.blobs[locator]
            for start in range(0, len(content), self.chunk_size):
                yield content[start : start + self.chunk_size]
        finally:
            self.active -= 1

    async def close(self):
        self.closed = True


class EventRecorder:
    def __init__(self, bus: EventBus):
        self.events: List[StatusEvent] = []
        bus.subscribe(self.events.append)

    def phases(self, project_id: str) -> List[Phase]:
        return [e.phase for e in self.events if e.project_id == project_id]

    def count(self, project_id: str, phase: Phase) -> int:
        return self.phases(project_id).count(phase)


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def recorder(events):
    return EventRecorder(events)


@pytest.fixture
def resolver(catalog):
    return VersionResolver(catalog)


@pytest.fixture
def engine(resolver, events):
    return CompatibilityEngine(resolver, events)


@pytest.fixture
def install_dir(tmp_path):
    path = tmp_path / "game"
    path.mkdir()
    return str(path)


@pytest.fixture
def backend(tmp_path):
    return JsonDirectoryBackend(str(tmp_path / "state"))


@pytest.fixture
async def cache(backend):
    cache = LocalProjectCache(backend)
    await cache.load()
    return cache


@pytest.fixture
async def orchestrator(catalog, cache, install_dir, events):
    orchestrator = DownloadOrchestrator(
        catalog,
        cache,
        install_dir,
        events=events,
        max_concurrent=2,
        max_retries=2,
        retry_delay=0,
        timeout=5,
    )
    yield orchestrator
    await orchestrator.close()


def installed(version: VersionRecord, path: str = "/nonexistent") -> InstalledEntry:
    return InstalledEntry(version.project_id, version, path)
