"""
Tests for manifest and plan data types.
"""

import pytest

from toolpkg.toolchain.models import (
    ArtifactDescriptor,
    Dependency,
    InstalledFile,
    Manifest,
    Package,
    PackageRequest,
    ResolvedPackage,
    ResolvedPlan,
    is_valid_version,
    version_key,
)


class TestVersions:
    """Test version validation and ordering."""

    def test_is_valid_version(self):
        """Test dotted numeric versions are accepted."""
        assert is_valid_version("14")
        assert is_valid_version("14.40.33807")
        assert not is_valid_version("14.")
        assert not is_valid_version("latest")
        assert not is_valid_version("1.0-rc1")

    def test_numeric_ordering(self):
        """Test components compare numerically and prefixes sort first."""
        versions = ["14.10", "14.2", "14", "14.0", "9.99"]
        assert sorted(versions, key=version_key) == ["9.99", "14", "14.0", "14.2", "14.10"]


class TestRequests:
    """Test request and dependency parsing."""

    def test_parse_request(self):
        """Test id and optional version parsing."""
        assert PackageRequest.parse("cmake") == PackageRequest("cmake")
        assert PackageRequest.parse(" cmake@3.29.2 ", "tools") == PackageRequest(
            "cmake", "3.29.2", "tools"
        )

    @pytest.mark.parametrize("spec", ["@1.0", "cmake@", "cmake@abc"])
    def test_invalid_request(self, spec):
        """Test malformed specs raise ValueError."""
        with pytest.raises(ValueError):
            PackageRequest.parse(spec)

    def test_str(self):
        """Test the string form matches the parsed text."""
        assert str(Dependency.parse("sdk@10.0")) == "sdk@10.0"
        assert str(PackageRequest("ninja")) == "ninja"


class TestArtifactDescriptor:
    """Test ArtifactDescriptor."""

    def test_from_dict_decodes_url(self):
        """Test URL percent-decoding and hash lowercasing."""
        artifact = ArtifactDescriptor.from_dict(
            {"url": "https://example.com/My%20Tool.zip", "sha256": "AB" * 32, "size": "12"}
        )

        assert artifact.url == "https://example.com/My Tool.zip"
        assert artifact.name == "My Tool.zip"
        assert artifact.sha256 == "ab" * 32
        assert artifact.size == 12
        assert artifact.arch == "neutral"

    def test_to_dict_omits_default_strip_root(self):
        """Test strip_root only appears when set."""
        artifact = ArtifactDescriptor("https://e.com/a.zip", "a" * 64, 1)
        assert "strip_root" not in artifact.to_dict()
        assert ArtifactDescriptor("u", "a" * 64, 1, strip_root=True).to_dict()["strip_root"]

    def test_installed_file_dict(self):
        """Test InstalledFile dict conversion."""
        entry = InstalledFile("bin/tool", "c" * 64, 3)
        assert InstalledFile.from_dict(entry.to_dict()) == entry


class TestManifest:
    """Test Manifest lookups."""

    @pytest.fixture
    def manifest(self) -> Manifest:
        return Manifest(
            snapshot="s1",
            packages=(
                Package("cmake", "cmake", "3.9"),
                Package("cmake", "cmake", "3.29.2"),
                Package("cmake", "cmake", "3.28.1"),
                Package("ninja", "ninja", "1.12.1"),
            ),
        )

    def test_versions_highest_first(self, manifest):
        """Test versions are ordered numerically, highest first."""
        assert manifest.versions_of("cmake") == ["3.29.2", "3.28.1", "3.9"]
        assert manifest.versions_of("missing") == []

    def test_find(self, manifest):
        """Test latest and exact lookups."""
        assert manifest.find("cmake").version == "3.29.2"
        assert manifest.find("cmake", "3.9").version == "3.9"
        assert manifest.find("cmake", "1.0") is None
        assert manifest.find("missing") is None

    def test_list_packages(self, manifest):
        """Test listing is sorted by id then version."""
        assert manifest.list_packages() == [
            ("cmake", "3.9"),
            ("cmake", "3.28.1"),
            ("cmake", "3.29.2"),
            ("ninja", "1.12.1"),
        ]

    def test_artifacts_for_arch(self):
        """Test neutral artifacts are selected for every arch."""
        package = Package(
            "tool",
            "tool",
            "1",
            artifacts=(
                ArtifactDescriptor("https://e.com/n.zip", "a" * 64, 1),
                ArtifactDescriptor("https://e.com/x.zip", "b" * 64, 1, arch="x64"),
                ArtifactDescriptor("https://e.com/a.zip", "c" * 64, 1, arch="arm64"),
            ),
        )

        assert [a.name for a in package.artifacts_for("x64")] == ["n.zip", "x.zip"]
        assert [a.name for a in package.artifacts_for("arm64")] == ["n.zip", "a.zip"]


class TestResolvedPlan:
    """Test ResolvedPlan."""

    def test_sorted_and_lookup(self):
        """Test packages are sorted by id and retrievable."""
        plan = ResolvedPlan(
            packages=(ResolvedPackage("sdk", "10"), ResolvedPackage("cmake", "3"))
        )

        assert plan.package_ids() == ["cmake", "sdk"]
        assert len(plan) == 2
        assert plan.get("sdk").version == "10"
        assert plan.get("missing") is None
        assert str(plan.get("cmake")) == "cmake@3"

    def test_restrict(self):
        """Test narrowing a plan to some ids and their dependencies."""
        plan = ResolvedPlan(
            packages=(
                ResolvedPackage("msvc", "14", dependencies=("sdk",)),
                ResolvedPackage("sdk", "10"),
                ResolvedPackage("cmake", "3"),
            ),
            snapshot="s1",
        )

        narrowed = plan.restrict(["msvc"])

        assert narrowed.package_ids() == ["msvc", "sdk"]
        assert narrowed.snapshot == "s1"
        assert plan.restrict(["missing"]).package_ids() == []
