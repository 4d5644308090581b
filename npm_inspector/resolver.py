# npm_inspector/resolver.py
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor

from .errors import InspectorError
from .models import DependencyResolution, GraphNode

logger = logging.getLogger(__name__)

MAX_DEPTH = 3
CONCURRENT_FETCH_LIMIT = 10

# MAJOR.MINOR.PATCH with optional prerelease/build; no range operators
EXACT_VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")


def is_exact_version(version) -> bool:
    return isinstance(version, str) and bool(EXACT_VERSION_PATTERN.match(version))


class DependencyResolver:
    """
    Expands a package's declared dependency ranges into exact versions.

    The transitive walk is breadth-first and bounded by `max_depth`. Each package
    name is expanded at most once per run (first-discovered version wins), which
    breaks cycles and avoids refetching shared dependencies.
    """

    def __init__(self, registry, max_depth: int = MAX_DEPTH, concurrency: int = CONCURRENT_FETCH_LIMIT):
        self.registry = registry
        self.max_depth = max_depth
        self.concurrency = concurrency

    def resolve(self, root_name: str, root_version: str, declared: dict | None = None) -> DependencyResolution:
        """
        Returns exact versions for the root's direct dependencies and for its
        transitive dependencies. A failed transitive walk is not fatal: direct
        dependencies are then normalized on their own and `transitive` is empty.
        """
        if declared is None:
            declared = self.registry.fetch_package_version_data(root_name, root_version).dependencies
        resolution = DependencyResolution()
        if not declared:
            logger.info(f"{root_name}@{root_version} declares no dependencies")
            return resolution

        graph = {}
        try:
            graph = self.fetch_transitive_dependencies(root_name, root_version, declared)
        except Exception as e:
            logger.warning(f"Failed to fetch transitive dependencies for {root_name}@{root_version}: {e}")
            logger.warning("Normalizing direct dependencies to exact versions via metadata/latest fallback")

        for dep_name, dep_range in declared.items():
            node = graph.get(dep_name)
            version = node.version if node is not None and node.depth == 1 else None
            if version is None:
                version = self.normalize_range(dep_name, dep_range)
            if not is_exact_version(version):
                logger.warning(f"Skipping {dep_name} from vulnerability check: no exact version for '{dep_range}'")
                resolution.skipped.append(dep_name)
                continue
            resolution.direct_exact[dep_name] = version

        for dep_name, node in graph.items():
            if dep_name == root_name or dep_name in declared:
                continue
            if not is_exact_version(node.version):
                logger.warning(f"Skipping {dep_name} from vulnerability check: '{node.version}' is not an exact version")
                resolution.skipped.append(dep_name)
                continue
            resolution.transitive[dep_name] = node.version

        logger.info(
            f"Resolved {len(resolution.direct_exact)} direct and {len(resolution.transitive)} transitive "
            f"dependencies for {root_name}@{root_version} ({len(resolution.skipped)} skipped)"
        )
        return resolution

    def normalize_range(self, dep_name: str, dep_range: str) -> str | None:
        """Range -> highest satisfying version -> latest version -> None (dropped)."""
        try:
            return self.registry.resolve_version_from_range(dep_name, dep_range)
        except InspectorError as metadata_error:
            logger.warning(f"Metadata resolution failed for {dep_name}@{dep_range}: {metadata_error.message}")

        try:
            latest = self.registry.fetch_package_data(dep_name, include_github_stats=False)
        except InspectorError as fetch_error:
            logger.warning(f"Failed to resolve {dep_name}@{dep_range} to an exact version: {fetch_error.message}")
            return None
        logger.info(f"Resolved {dep_name}@{dep_range} to latest version {latest.version}")
        return latest.version

    def fetch_transitive_dependencies(self, root_name: str, root_version: str, root_dependencies: dict | None = None) -> dict[str, GraphNode]:
        """
        Breadth-first walk from the root. Returns name -> GraphNode for every
        package found at depth 1..max_depth, excluding the root itself.
        """
        started = time.monotonic()
        if root_dependencies is None:
            root_dependencies = self.registry.fetch_package_version_data(root_name, root_version).dependencies

        visited = {root_name}  # names claimed during this run; only touched on this thread
        nodes: dict[str, GraphNode] = {}
        failed = []
        skipped_count = 0
        current_level = [GraphNode(root_name, root_version, 0, dict(root_dependencies))]

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            while current_level:
                pending = []
                for parent in current_level:
                    if parent.depth >= self.max_depth:
                        continue
                    for dep_name, dep_range in parent.dependencies.items():
                        if dep_name in visited:
                            skipped_count += 1
                            continue
                        visited.add(dep_name)
                        pending.append((dep_name, dep_range, parent.depth + 1))

                next_level = []
                for i in range(0, len(pending), self.concurrency):
                    chunk = pending[i:i + self.concurrency]
                    expanded = list(executor.map(lambda item: self._expand(*item), chunk))
                    for (dep_name, _, _), node in zip(chunk, expanded):
                        if node is None:
                            failed.append(dep_name)
                            continue
                        nodes[dep_name] = node
                        next_level.append(node)
                current_level = next_level

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(f"Found {len(nodes)} dependencies (direct + transitive) for {root_name}@{root_version} in {elapsed_ms:.0f} ms")
        logger.info(f"Skipped {skipped_count} already visited packages")
        if failed:
            more = f" and {len(failed) - 5} more" if len(failed) > 5 else ""
            logger.warning(f"Failed to fetch {len(failed)} transitive dependencies: {', '.join(failed[:5])}{more}")
        return nodes

    def _expand(self, dep_name: str, dep_range: str, depth: int) -> GraphNode | None:
        try:
            version = self.registry.resolve_version_from_range(dep_name, dep_range)
            dependencies = {}
            if depth < self.max_depth:
                dependencies = self.registry.fetch_package_version_data(dep_name, version).dependencies
        except InspectorError as e:
            logger.warning(f"Failed to fetch transitive dependency '{dep_name}@{dep_range}': {e.message}")
            return None
        return GraphNode(name=dep_name, version=version, depth=depth, dependencies=dict(dependencies))
