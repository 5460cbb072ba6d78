import asyncio
import dataclasses
import os

import pytest

from modkeeper.events import Phase
from modkeeper.exceptions import (
    IntegrityError,
    PersistenceError,
    TransportError,
    VersionGoneError,
)
from modkeeper.download import DownloadOrchestrator
from modkeeper.models import OutcomeStatus, PlanAction, PlanEntry

from conftest import TARGET, dep, sha1


def task_for(orchestrator, version):
    return orchestrator.task_for(PlanEntry(version.project_id, PlanAction.INSTALL, version))


async def wait_for_fetch(catalog, locator, calls=1):
    while catalog.fetch_calls[locator] < calls:
        await asyncio.sleep(0)


def read(path):
    with open(path, "rb") as f:
        return f.read()


async def install(orchestrator, version, manual=True):
    entry = PlanEntry(version.project_id, PlanAction.INSTALL, version, manual=manual)
    return await orchestrator.submit(orchestrator.task_for(entry))


async def test_install_writes_file_and_cache(catalog, orchestrator, cache, recorder):
    version = catalog.add("p", "v1", content=b"payload")

    outcome = await install(orchestrator, version)

    assert outcome.status == OutcomeStatus.INSTALLED
    assert outcome.attempts == 1
    path = os.path.join(orchestrator.install_dir, "mods", "p-v1.jar")
    assert read(path) == b"payload"
    assert not os.path.exists(path + ".part")
    assert cache.get("p").version == version
    assert cache.get("p").path == path
    assert recorder.phases("p") == [Phase.DOWNLOADING, Phase.VERIFYING, Phase.INSTALLED]


async def test_concurrent_identical_requests_coalesce(catalog, orchestrator, recorder):
    catalog.gate = asyncio.Event()
    version = catalog.add("p", "v1")
    task = task_for(orchestrator, version)

    first = orchestrator.submit(task)
    await wait_for_fetch(catalog, version.locator)
    second = orchestrator.submit(task)
    third = orchestrator.submit(task)
    catalog.gate.set()
    outcomes = await asyncio.gather(first, second, third)

    assert all(outcome.ok for outcome in outcomes)
    assert [outcome.coalesced for outcome in outcomes] == [False, True, True]
    assert catalog.fetch_calls[version.locator] == 1
    assert recorder.count("p", Phase.INSTALLED) == 1
    assert orchestrator.admission.coalesced == 2


async def test_different_request_runs_after_in_flight(catalog, orchestrator, cache):
    catalog.gate = asyncio.Event()
    v1 = catalog.add("p", "v1", day=0)
    v2 = catalog.add("p", "v2", day=1)

    first = orchestrator.submit(task_for(orchestrator, v1))
    second = orchestrator.submit(task_for(orchestrator, v2))
    await wait_for_fetch(catalog, v1.locator)
    assert catalog.fetch_calls[v2.locator] == 0
    catalog.gate.set()

    assert (await first).ok and (await second).ok
    assert cache.get("p").version == v2
    assert not os.path.exists(first.result().entry.path)
    assert os.path.exists(second.result().entry.path)


async def test_hash_mismatch_fails_without_install(catalog, orchestrator, cache, recorder):
    version = catalog.add("p", "v1", content=b"real", content_hash=sha1(b"declared"))

    outcome = await install(orchestrator, version)

    assert outcome.status == OutcomeStatus.FAILED
    assert isinstance(outcome.error, IntegrityError)
    assert catalog.fetch_calls[version.locator] == 1
    destination = orchestrator.destination_for(version)
    assert not os.path.exists(destination)
    assert not os.path.exists(destination + ".part")
    assert "p" not in cache
    assert recorder.phases("p")[-1] == Phase.FAILED


async def test_missing_hash_fails(catalog, orchestrator):
    version = catalog.add("p", "v1", content_hash="")

    outcome = await install(orchestrator, version)

    assert isinstance(outcome.error, IntegrityError)
    assert catalog.fetch_calls[version.locator] == 0


async def test_transient_failure_retried(catalog, orchestrator, cache):
    version = catalog.add("p", "v1")
    catalog.fetch_failures[version.locator] = [TransportError("reset", transient=True)]

    outcome = await install(orchestrator, version)

    assert outcome.ok
    assert outcome.attempts == 2
    assert catalog.fetch_calls[version.locator] == 2
    assert orchestrator.stats.retries == 1
    assert "p" in cache


async def test_connection_error_mid_stream_is_transient(catalog, orchestrator):
    version = catalog.add("p", "v1")
    catalog.fetch_failures[version.locator] = [ConnectionResetError()]

    outcome = await install(orchestrator, version)

    assert outcome.ok
    assert outcome.attempts == 2


async def test_retries_exhausted(catalog, orchestrator):
    version = catalog.add("p", "v1")
    catalog.fetch_failures[version.locator] = [
        TransportError("503", transient=True) for _ in range(3)
    ]

    outcome = await install(orchestrator, version)

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.attempts == 3
    assert isinstance(outcome.error, TransportError)


async def test_non_transient_failure_not_retried(catalog, orchestrator):
    version = catalog.add("p", "v1")
    catalog.fetch_failures[version.locator] = [VersionGoneError("gone")]

    outcome = await install(orchestrator, version)

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.attempts == 1
    assert catalog.fetch_calls[version.locator] == 1


async def test_cancel_during_download(catalog, orchestrator, cache, recorder):
    catalog.gate = asyncio.Event()
    version = catalog.add("p", "v1")

    running = orchestrator.submit(task_for(orchestrator, version))
    await wait_for_fetch(catalog, version.locator)
    assert orchestrator.cancel("p")
    outcome = await running

    assert outcome.status == OutcomeStatus.CANCELLED
    destination = orchestrator.destination_for(version)
    assert not os.path.exists(destination)
    assert not os.path.exists(destination + ".part")
    assert "p" not in cache
    assert recorder.events[-1].reason == "cancelled"


async def test_cancel_before_start(catalog, orchestrator, cache):
    version = catalog.add("p", "v1")

    running = orchestrator.submit(task_for(orchestrator, version))
    orchestrator.cancel_all()
    outcome = await running

    assert outcome.status == OutcomeStatus.CANCELLED
    assert catalog.fetch_calls[version.locator] == 0
    assert "p" not in cache


async def test_cancel_leaves_previous_install(catalog, orchestrator, cache):
    v1 = catalog.add("p", "v1", day=0)
    v2 = catalog.add("p", "v2", day=1)
    await install(orchestrator, v1)

    catalog.gate = asyncio.Event()
    running = orchestrator.submit(task_for(orchestrator, v2))
    await wait_for_fetch(catalog, v2.locator)
    orchestrator.cancel("p")
    await running

    assert cache.get("p").version == v1
    assert os.path.exists(cache.get("p").path)


async def test_persistence_failure_restores_previous_file(
    catalog, orchestrator, cache, backend, monkeypatch
):
    v1 = catalog.add("p", "v1", content=b"old", day=0)
    await install(orchestrator, v1)
    v2 = dataclasses.replace(
        catalog.add("p", "v2", content=b"new", day=1), filename=v1.file_name
    )

    async def fail(entry):
        raise PersistenceError("disk full")

    monkeypatch.setattr(backend, "write_entry", fail)
    outcome = await install(orchestrator, v2)

    assert outcome.status == OutcomeStatus.FAILED
    assert isinstance(outcome.error, PersistenceError)
    destination = orchestrator.destination_for(v1)
    assert read(destination) == b"old"
    assert not os.path.exists(destination + ".bak")
    assert not os.path.exists(destination + ".part")
    assert cache.get("p").version == v1


async def test_persistence_failure_on_new_path(catalog, orchestrator, cache, backend, monkeypatch):
    v1 = catalog.add("p", "v1", day=0)
    await install(orchestrator, v1)
    v2 = catalog.add("p", "v2", day=1)

    async def fail(entry):
        raise PersistenceError("disk full")

    monkeypatch.setattr(backend, "write_entry", fail)
    outcome = await install(orchestrator, v2)

    assert not outcome.ok
    assert os.path.exists(orchestrator.destination_for(v1))
    assert not os.path.exists(orchestrator.destination_for(v2))
    assert cache.get("p").version == v1


async def test_update_removes_previous_file(catalog, orchestrator, cache):
    v1 = catalog.add("p", "v1", day=0)
    v2 = catalog.add("p", "v2", day=1)

    first = await install(orchestrator, v1)
    second = await install(orchestrator, v2)

    assert not os.path.exists(first.entry.path)
    assert os.path.exists(second.entry.path)
    assert cache.get("p").version == v2


async def test_existing_valid_file_is_reused(catalog, orchestrator, cache):
    version = catalog.add("p", "v1", content=b"content")
    destination = orchestrator.destination_for(version)
    os.makedirs(os.path.dirname(destination))
    with open(destination, "wb") as f:
        f.write(b"content")

    outcome = await install(orchestrator, version)

    assert outcome.ok
    assert catalog.fetch_calls[version.locator] == 0
    assert cache.get("p").path == destination
    assert orchestrator.stats.reused == 1


async def test_sibling_failure_does_not_abort_plan(catalog, engine, orchestrator, cache):
    catalog.add("good", "g1")
    catalog.add("bad", "b1", content=b"x", content_hash=sha1(b"y"))
    catalog.add("other", "o1", game_versions=("1.19",))
    plan = await engine.plan(TARGET, [], ["good", "bad", "other"])

    outcomes = {outcome.project_id: outcome async for outcome in orchestrator.execute(plan)}

    assert set(outcomes) == {"good", "bad"}
    assert outcomes["good"].ok
    assert outcomes["bad"].status == OutcomeStatus.FAILED
    assert "good" in cache and "bad" not in cache


async def test_concurrency_limit(catalog, orchestrator):
    catalog.gate = asyncio.Event()
    versions = [catalog.add(f"p{i}", "v1") for i in range(4)]

    running = [orchestrator.submit(task_for(orchestrator, v)) for v in versions]
    await wait_for_fetch(catalog, versions[0].locator)
    await wait_for_fetch(catalog, versions[1].locator)
    for _ in range(10):
        await asyncio.sleep(0)
    assert catalog.active == 2
    catalog.gate.set()
    outcomes = await asyncio.gather(*running)

    assert all(outcome.ok for outcome in outcomes)
    assert catalog.peak == 2


async def test_uninstall(catalog, orchestrator, cache, recorder):
    version = catalog.add("p", "v1")
    outcome = await install(orchestrator, version)

    result = await orchestrator.uninstall("p")

    assert result.ok
    assert [entry.project_id for entry in result.removed] == ["p"]
    assert not os.path.exists(outcome.entry.path)
    assert "p" not in cache
    assert recorder.phases("p")[-1] == Phase.REMOVED
    assert not (await orchestrator.uninstall("p")).ok


async def test_uninstall_waits_for_install(catalog, orchestrator, cache):
    catalog.gate = asyncio.Event()
    version = catalog.add("p", "v1")

    running = orchestrator.submit(task_for(orchestrator, version))
    removal = orchestrator.uninstall("p")
    await wait_for_fetch(catalog, version.locator)
    catalog.gate.set()

    assert (await running).ok
    assert (await removal).ok
    assert "p" not in cache


def test_task_for_rejects_skip(catalog, orchestrator):
    version = catalog.add("p", "v1")

    with pytest.raises(ValueError):
        orchestrator.task_for(PlanEntry("p", PlanAction.SKIP, version))


async def test_stalled_chunk_times_out_and_retries(catalog, cache, install_dir):
    orchestrator = DownloadOrchestrator(
        catalog, cache, install_dir, max_retries=1, retry_delay=0, timeout=0.05
    )
    catalog.gate = asyncio.Event()
    version = catalog.add("p", "v1")

    outcome = await install(orchestrator, version)
    await orchestrator.close()

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.attempts == 2
    assert catalog.fetch_calls[version.locator] == 2
    assert isinstance(outcome.error, TransportError)
    assert outcome.error.transient
    assert isinstance(outcome.error.__cause__, asyncio.TimeoutError)
    assert catalog.active == 0
    assert "p" not in cache


async def test_uninstall_required_dependency_is_demoted(catalog, orchestrator, cache):
    lib = await install(orchestrator, catalog.add("lib", "l1"))
    await install(orchestrator, catalog.add("app", "a1", dependencies=(dep("lib"),)))

    result = await orchestrator.uninstall("lib")

    assert not result.ok
    assert result.dependents == ("app",)
    assert os.path.exists(lib.entry.path)
    assert cache.get("lib").manual is False


async def test_uninstall_removes_orphaned_dependencies(catalog, orchestrator, cache, recorder):
    lib_version = catalog.add("lib", "l1", dependencies=(dep("core"),))
    lib = await install(orchestrator, lib_version, manual=False)
    core = await install(orchestrator, catalog.add("core", "c1"), manual=False)
    await install(orchestrator, catalog.add("app", "a1", dependencies=(dep("lib"),)))

    result = await orchestrator.uninstall("app")

    assert [entry.project_id for entry in result.removed] == ["app", "lib", "core"]
    assert len(cache) == 0
    assert not os.path.exists(lib.entry.path)
    assert not os.path.exists(core.entry.path)
    assert recorder.phases("core")[-1] == Phase.REMOVED


async def test_uninstall_keeps_manual_and_shared_dependencies(catalog, orchestrator, cache):
    await install(orchestrator, catalog.add("lib", "l1"))
    await install(orchestrator, catalog.add("shared", "s1"), manual=False)
    await install(
        orchestrator, catalog.add("app", "a1", dependencies=(dep("lib"), dep("shared")))
    )
    await install(orchestrator, catalog.add("other", "o1", dependencies=(dep("shared"),)))

    result = await orchestrator.uninstall("app")

    assert [entry.project_id for entry in result.removed] == ["app"]
    assert "lib" in cache
    assert "shared" in cache
