"""Which workspace libraries the served process needs linked locally."""

from __future__ import annotations

from collections.abc import Collection

from buildserve.logging import ServeLogComponent, get_logger
from buildserve.models import DependencySet, WorkspaceGraph

logger = get_logger(ServeLogComponent.DEPS)


class DependencySetCalculator:
    """Computes the dependency set of a project for one cycle.

    The graph is queried on every call: sibling builds may have finished since
    the previous cycle and changed the available output paths.
    """

    def __init__(self, graph: WorkspaceGraph) -> None:
        self._graph = graph

    def compute(
        self,
        project_id: str,
        is_bundled: bool,
        external: Collection[str] | None,
    ) -> DependencySet:
        """Return the workspace dependencies of ``project_id`` that must be linked.

        - bundled with an external list: only dependencies named in it
        - bundled without one: nothing, everything is inlined
        - not bundled: every workspace dependency, regardless of the list
        """
        if is_bundled and not external:
            logger.debug(f"{project_id} is fully bundled, nothing to link")
            return []

        edges = self._graph.resolve_dependencies(project_id)

        if is_bundled:
            assert external is not None
            allowed = set(external)
            edges = [edge for edge in edges if edge.import_key in allowed]

        logger.debug(
            f"{project_id} needs {len(edges)} linked dependencies: "
            f"{', '.join(edge.import_key for edge in edges) or '-'}"
        )
        return list(edges)
