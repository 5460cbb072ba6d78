from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from modkeeper.api.modrinth import ModrinthCatalog, version_from_modrinth
from modkeeper.exceptions import TransportError, VersionGoneError
from modkeeper.models import Channel, DependencyType, ResourceKind, Target

VERSION = {
    "id": "IZskON6d",
    "project_id": "AANobbMI",
    "version_number": "mc1.20.1-0.5.3",
    "version_type": "beta",
    "game_versions": ["1.20.1"],
    "loaders": ["fabric", "quilt"],
    "date_published": "2023-09-15T12:00:00.000000Z",
    "dependencies": [
        {"project_id": "P7dR8mSH", "version_id": None, "dependency_type": "required"},
        {"project_id": None, "version_id": "xyz", "dependency_type": "required"},
        {"project_id": "Orvt0mRa", "dependency_type": "incompatible"},
    ],
    "files": [
        {
            "url": "https://cdn.modrinth.com/data/AANobbMI/versions/IZskON6d/sodium-sources.jar",
            "filename": "sodium-sources.jar",
            "primary": False,
            "hashes": {"sha1": "1" * 40},
        },
        {
            "url": "https://cdn.modrinth.com/data/AANobbMI/versions/IZskON6d/sodium.jar",
            "filename": "sodium.jar",
            "primary": True,
            "hashes": {"sha1": "A" * 40, "sha512": "b" * 128},
        },
    ],
}


def test_version_from_modrinth():
    record = version_from_modrinth(VERSION, ResourceKind.MOD)

    assert record.version_id == "IZskON6d"
    assert record.name == "mc1.20.1-0.5.3"
    assert record.channel is Channel.BETA
    assert record.filename == "sodium.jar"
    assert record.content_hash == "a" * 40
    assert record.published_at == datetime(2023, 9, 15, 12, tzinfo=timezone.utc)
    assert [d.project_id for d in record.dependencies] == ["P7dR8mSH", "Orvt0mRa"]
    assert record.dependencies[1].dependency_type is DependencyType.INCOMPATIBLE
    assert record.is_compatible(Target("1.20.1", "quilt"))


def test_version_without_files_is_skipped():
    assert version_from_modrinth({**VERSION, "files": []}, ResourceKind.MOD) is None


def test_first_file_used_without_primary():
    files = [{**f, "primary": False} for f in VERSION["files"]]

    record = version_from_modrinth({**VERSION, "files": files}, ResourceKind.SHADER)

    assert record.filename == "sodium-sources.jar"
    assert record.kind is ResourceKind.SHADER


@pytest.mark.parametrize(
    "status, error_type, transient",
    [
        (404, VersionGoneError, False),
        (410, VersionGoneError, False),
        (429, TransportError, True),
        (503, TransportError, True),
        (403, TransportError, False),
    ],
)
def test_status_mapping(status, error_type, transient):
    response = SimpleNamespace(status=status, url="https://api.modrinth.com/v2/x")

    with pytest.raises(error_type) as excinfo:
        ModrinthCatalog._check_status(response)
    assert excinfo.value.transient is transient


def test_ok_status_passes():
    ModrinthCatalog._check_status(SimpleNamespace(status=200, url=""))


class RecordingCatalog(ModrinthCatalog):
    """不发网络请求，按端点返回固定数据"""

    def __init__(self, responses):
        super().__init__()
        self.responses = responses
        self.requests = []

    async def _request(self, endpoint, params=None):
        self.requests.append(endpoint)
        return self.responses[endpoint]


async def test_canonical_id_maps_slug_and_caches():
    catalog = RecordingCatalog(
        {"/project/sodium": {"id": "AANobbMI", "slug": "sodium", "project_type": "mod"}}
    )

    assert await catalog.canonical_id("sodium") == "AANobbMI"
    assert await catalog.canonical_id("AANobbMI") == "AANobbMI"
    assert catalog.requests == ["/project/sodium"]
