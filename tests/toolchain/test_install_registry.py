"""
Tests for the install registry.
"""

import json

import pytest

from toolpkg.core.exceptions import ConflictDetected, InstallRegistryError, RecordNotFound
from toolpkg.core.locking import LockManager
from toolpkg.toolchain.install_registry import (
    RECORD_FILENAME,
    InstallRecord,
    InstallRegistry,
    find_conflicts,
)
from toolpkg.toolchain.models import InstalledFile
from tests.fixtures.artifacts import sha256_hex


def _stage(layout, package_id: str, version: str, files: dict, destination: str = "default"):
    """Write files into a staging root and build the matching record."""
    staged = layout.staging_dir / f"{package_id}-{version}"
    installed = []
    for path, data in files.items():
        target = staged / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        installed.append(InstalledFile(path, sha256_hex(data), len(data)))
    record = InstallRecord.create(
        package_id, version, installed, artifacts=["f" * 64], destination=destination
    )
    return staged, record


@pytest.fixture
def registry(layout):
    return InstallRegistry(layout, LockManager(layout.lock_dir))


class TestInstallRecord:
    """Test InstallRecord."""

    def test_create_sorts(self):
        """Test files and artifacts are sorted and deduplicated."""
        record = InstallRecord.create(
            "tool",
            "1",
            [InstalledFile("z", "1" * 64, 1), InstalledFile("a", "2" * 64, 2)],
            artifacts=["b" * 64, "a" * 64, "b" * 64],
        )

        assert [f.path for f in record.files] == ["a", "z"]
        assert record.artifacts == ("a" * 64, "b" * 64)

    def test_dict_round_trip(self, tmp_path):
        """Test dict conversion keeps content and ignores root in equality."""
        record = InstallRecord.create("tool", "1", [InstalledFile("a", "2" * 64, 2)])
        loaded = InstallRecord.from_dict(record.to_dict(), root=tmp_path)

        assert loaded == record
        assert loaded.root == tmp_path


class TestFindConflicts:
    """Test find_conflicts function."""

    def test_different_content_conflicts(self):
        """Test the same path with different hashes is reported."""
        mine = InstallRecord.create("a", "1", [InstalledFile("bin/x", "1" * 64, 1)])
        other = InstallRecord.create("b", "1", [InstalledFile("bin/x", "2" * 64, 1)])

        report = find_conflicts(mine, [other])

        assert report
        assert report.conflicts == {"bin/x": {("a", "1" * 64), ("b", "2" * 64)}}
        assert report.packages() == ["a", "b"]
        assert "bin/x" in report.describe()

    def test_identical_content_is_not_conflict(self):
        """Test the same path with identical content is fine."""
        mine = InstallRecord.create("a", "1", [InstalledFile("bin/x", "1" * 64, 1)])
        other = InstallRecord.create("b", "1", [InstalledFile("bin/x", "1" * 64, 1)])

        assert not find_conflicts(mine, [other])

    def test_other_destination_ignored(self):
        """Test records in other destinations never conflict."""
        mine = InstallRecord.create("a", "1", [InstalledFile("x", "1" * 64, 1)])
        other = InstallRecord.create(
            "b", "1", [InstalledFile("x", "2" * 64, 1)], destination="tools"
        )

        assert not find_conflicts(mine, [other])

    def test_same_version_ignored(self):
        """Test a record does not conflict with its own previous install."""
        mine = InstallRecord.create("a", "1", [InstalledFile("x", "1" * 64, 1)])
        previous = InstallRecord.create("a", "1", [InstalledFile("x", "2" * 64, 1)])

        assert not find_conflicts(mine, [previous])


class TestInstallRegistry:
    """Test InstallRegistry class."""

    def test_register_publishes_root(self, registry, layout):
        """Test registering moves the staged root into place with its record."""
        staged, record = _stage(layout, "cmake", "3.29.2", {"bin/cmake": b"cmake"})

        report = registry.register(record, staged_root=staged)

        root = layout.package_root("cmake", "3.29.2")
        assert not report
        assert not staged.exists()
        assert (root / "bin" / "cmake").read_bytes() == b"cmake"
        assert (root / RECORD_FILENAME).is_file()
        assert registry.files_for("cmake", "3.29.2") == record

    def test_record_bytes_deterministic(self, registry, layout):
        """Test registering the same record twice writes identical bytes."""
        staged, record = _stage(layout, "cmake", "3.29.2", {"bin/cmake": b"cmake"})
        registry.register(record, staged_root=staged)
        first = registry.record_path("cmake", "3.29.2").read_bytes()

        staged, record = _stage(layout, "cmake", "3.29.2", {"bin/cmake": b"cmake"})
        registry.register(record, staged_root=staged)

        assert registry.record_path("cmake", "3.29.2").read_bytes() == first
        assert json.loads(first)["files"][0]["path"] == "bin/cmake"

    def test_files_for_missing(self, registry):
        """Test querying an absent package raises RecordNotFound."""
        with pytest.raises(RecordNotFound):
            registry.files_for("cmake", "3.29.2")
        assert registry.find_record("cmake", "3.29.2") is None

    def test_corrupt_record(self, registry, layout):
        """Test an unreadable record raises InstallRegistryError."""
        root = layout.package_root("cmake", "3.29.2")
        root.mkdir(parents=True)
        (root / RECORD_FILENAME).write_text("{ nope")

        with pytest.raises(InstallRegistryError, match="Corrupt"):
            registry.files_for("cmake", "3.29.2")

    def test_record_of_other_package(self, registry, layout):
        """Test a record naming another package is not returned for this root."""
        staged, record = _stage(layout, "a_b", "1", {"x": b"x"})
        registry.register(record, staged_root=staged)
        other_root = layout.package_root("a b", "1")
        other_root.mkdir(parents=True)
        (other_root / RECORD_FILENAME).write_bytes(registry.record_path("a_b", "1").read_bytes())

        assert other_root != registry.root_for("a_b", "1")
        assert registry.files_for("a_b", "1") == record
        with pytest.raises(InstallRegistryError, match="belongs to a_b@1"):
            registry.find_record("a b", "1")

    def test_installed_skips_corrupt(self, registry, layout, toolpkg_logs):
        """Test listing leaves out roots whose record cannot be read."""
        staged, record = _stage(layout, "ninja", "1.12.1", {"bin/ninja": b"n"})
        registry.register(record, staged_root=staged)
        broken = layout.package_root("cmake", "3.29.2")
        broken.mkdir(parents=True)
        (broken / RECORD_FILENAME).write_text("[]")

        assert [str(r) for r in registry.installed()] == ["ninja@1.12.1"]
        assert "Skipping cmake-3.29.2" in toolpkg_logs.text

    def test_installed_and_owners(self, registry, layout):
        """Test listing records and querying file owners."""
        staged, record = _stage(layout, "ninja", "1.12.1", {"bin/ninja": b"n", "LICENSE": b"l"})
        registry.register(record, staged_root=staged)
        staged, record = _stage(layout, "cmake", "3.29.2", {"bin/cmake": b"c", "LICENSE": b"l"})
        registry.register(record, staged_root=staged)
        staged, record = _stage(
            layout, "clang", "18.1", {"bin/clang": b"x", "LICENSE": b"z"}, destination="llvm"
        )
        registry.register(record, staged_root=staged)

        assert [str(r) for r in registry.installed()] == [
            "clang@18.1",
            "cmake@3.29.2",
            "ninja@1.12.1",
        ]
        assert registry.owners("LICENSE") == ["clang", "cmake", "ninja"]
        assert registry.owners("./LICENSE", destination="default") == ["cmake", "ninja"]
        assert registry.owners("bin/missing") == []
        assert [r.package_id for r in registry.records_for_destination("llvm")] == ["clang"]

    def test_staging_dir_not_listed(self, registry, layout):
        """Test in-progress staging roots are not installed packages."""
        staged, record = _stage(layout, "cmake", "3.29.2", {"bin/cmake": b"c"})
        (staged / RECORD_FILENAME).write_text(json.dumps(record.to_dict()))

        assert registry.installed() == []

    def test_conflict_warns(self, registry, layout, toolpkg_logs):
        """Test non-strict conflicts are reported and still published."""
        staged, record = _stage(layout, "a", "1", {"bin/tool": b"from a"})
        registry.register(record, staged_root=staged)
        staged, record = _stage(layout, "b", "1", {"bin/tool": b"from b"})

        report = registry.register(record, staged_root=staged)

        assert list(report.conflicts) == ["bin/tool"]
        assert registry.find_record("b", "1") is not None
        assert "File conflicts" in toolpkg_logs.text

    def test_conflict_strict(self, registry, layout):
        """Test strict conflicts raise and publish nothing."""
        staged, record = _stage(layout, "a", "1", {"bin/tool": b"from a"})
        registry.register(record, staged_root=staged)
        staged, record = _stage(layout, "b", "1", {"bin/tool": b"from b"})

        with pytest.raises(ConflictDetected) as exc_info:
            registry.register(record, staged_root=staged, strict=True)

        assert exc_info.value.report.packages() == ["a", "b"]
        assert registry.find_record("b", "1") is None
        assert not layout.package_root("b", "1").exists()

    def test_is_intact(self, registry, layout):
        """Test intactness checks artifacts and file sizes."""
        staged, record = _stage(layout, "cmake", "3.29.2", {"bin/cmake": b"cmake"})
        registry.register(record, staged_root=staged)
        stored = registry.files_for("cmake", "3.29.2")

        assert registry.is_intact(stored, ["f" * 64])
        assert not registry.is_intact(stored, ["e" * 64])

        (layout.package_root("cmake", "3.29.2") / "bin" / "cmake").write_bytes(b"changed!")
        assert not registry.is_intact(stored, ["f" * 64])

        (layout.package_root("cmake", "3.29.2") / "bin" / "cmake").unlink()
        assert not registry.is_intact(stored, ["f" * 64])

    def test_register_in_place(self, registry, layout):
        """Test registering without a staged root writes only the record."""
        root = layout.package_root("tool", "1")
        root.mkdir(parents=True)
        (root / "x").write_bytes(b"x")
        record = InstallRecord.create("tool", "1", [InstalledFile("x", sha256_hex(b"x"), 1)])

        registry.register(record)

        assert registry.files_for("tool", "1") == record
