"""
Dependency resolution against a manifest snapshot.

Resolution is greedy: every package id gets exactly one version. An id that
nobody pins resolves to the highest version in the snapshot; an id pinned by
the request or by a selected package's dependency list resolves to that pin.
Two different pins for the same id are a conflict, never silently settled.

Because a package's dependencies depend on which version of it is selected,
selection is repeated until the set no longer changes. Each round iterates
ids in sorted order and derives pins only from the current selection, so the
outcome does not depend on the order in which packages were requested.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set, Union

from toolpkg.core.exceptions import PackageNotFound, ResolutionConflict, ResolutionError
from toolpkg.toolchain.models import (
    Manifest,
    Package,
    PackageRequest,
    ResolvedPackage,
    ResolvedPlan,
)

logger = logging.getLogger(__name__)


class Resolver:
    """
    Turns package requests into a closed ResolvedPlan.

    Example:
        >>> resolver = Resolver(manifest)
        >>> plan = resolver.resolve([PackageRequest("msvc"), PackageRequest("sdk", "10.0.22621.7")])
        >>> plan.package_ids()
        ['msvc', 'ninja', 'sdk']
    """

    def __init__(self, manifest: Manifest, max_rounds: Optional[int] = None):
        self.manifest = manifest
        self.max_rounds = max_rounds or len(manifest.packages) + 2

    def resolve(self, requested: Iterable[Union[PackageRequest, str]]) -> ResolvedPlan:
        """
        Resolve requests into a plan sorted by package id.

        Args:
            requested: Requests, or request strings like 'cmake@3.29.2'

        Returns:
            ResolvedPlan covering the requests and their transitive dependencies

        Raises:
            PackageNotFound: If an id or pinned version is not in the manifest
            ResolutionConflict: If two different versions of one id are required
            ResolutionError: If selection does not settle
        """
        requests = [
            r if isinstance(r, PackageRequest) else PackageRequest.parse(r) for r in requested
        ]

        root_pins: Dict[str, Set[str]] = {}
        for request in requests:
            pins = root_pins.setdefault(request.package_id, set())
            if request.version:
                pins.add(request.version)

        selected: Dict[str, Package] = {}
        for _ in range(self.max_rounds):
            next_selected = self._select(root_pins, selected)
            if next_selected == selected:
                break
            selected = next_selected
        else:
            raise ResolutionError(
                f"Dependency resolution did not settle after {self.max_rounds} rounds"
            )

        plan = ResolvedPlan(
            packages=tuple(_to_resolved(p) for p in selected.values()),
            snapshot=self.manifest.snapshot,
        )
        logger.info(
            f"Resolved {len(plan)} packages from snapshot {plan.snapshot}: "
            f"{', '.join(str(p) for p in plan)}"
        )
        return plan

    def _select(
        self, root_pins: Dict[str, Set[str]], selected: Dict[str, Package]
    ) -> Dict[str, Package]:
        pins: Dict[str, Set[str]] = {pid: set(v) for pid, v in root_pins.items()}
        for package in selected.values():
            for dep in package.dependencies:
                dep_pins = pins.setdefault(dep.package_id, set())
                if dep.version:
                    dep_pins.add(dep.version)

        result: Dict[str, Package] = {}
        for package_id in sorted(pins):
            versions = pins[package_id]
            if len(versions) > 1:
                raise ResolutionConflict(package_id, versions)
            version = next(iter(versions)) if versions else None

            package = self.manifest.find(package_id, version)
            if package is None:
                if version is None and not self.manifest.versions_of(package_id):
                    raise PackageNotFound(package_id)
                raise PackageNotFound(package_id, version or "")
            result[package_id] = package

        # Drop ids only reachable from packages no longer selected
        return _reachable(result, root_pins)


def _reachable(candidates: Dict[str, Package], roots: Iterable[str]) -> Dict[str, Package]:
    reached: Dict[str, Package] = {}
    stack: List[str] = sorted(roots)
    while stack:
        package_id = stack.pop()
        if package_id in reached or package_id not in candidates:
            continue
        package = candidates[package_id]
        reached[package_id] = package
        stack.extend(d.package_id for d in package.dependencies)
    return reached


def _to_resolved(package: Package) -> ResolvedPackage:
    return ResolvedPackage(
        package_id=package.id,
        version=package.version,
        family=package.family,
        dependencies=tuple(sorted({d.package_id for d in package.dependencies})),
        artifacts=package.artifacts,
    )


def resolve(requested: Iterable[Union[PackageRequest, str]], manifest: Manifest) -> ResolvedPlan:
    """Resolve ``requested`` against ``manifest``. See Resolver.resolve."""
    return Resolver(manifest).resolve(requested)


__all__ = ["Resolver", "resolve"]
