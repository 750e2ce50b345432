"""Tests for the watch-mode serve loop."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from buildserve.constants import NODE_OPTIONS_ENV, NODE_RESOLUTION_FLAG
from buildserve.errors import ConfigurationMissingError, UpstreamStreamError
from buildserve.models import BuildEvent, CycleState, ServeOptions, TargetRef
from buildserve.serve.orchestrator import WatchOrchestrator
from buildserve.serve.process_control import ProcessLifecycleManager
from buildserve.workspace import FileWorkspace

from conftest import DictTargetReader, FakeGraph, RecordingProcesses, edge

BUILD = TargetRef(project="api", target="build")


async def _events(*events: BuildEvent) -> AsyncIterator[BuildEvent]:
    for event in events:
        yield event


def ok(name: str) -> BuildEvent:
    return BuildEvent(success=True, output_file=Path(name))


def failed(name: str) -> BuildEvent:
    return BuildEvent(success=False, output_file=Path(name))


@pytest.fixture
def reader() -> DictTargetReader:
    return DictTargetReader(
        {
            "api:build": {"format": ["cjs"], "bundle": False, "outputPath": "dist/apps/api"},
            "util:build": {"outputPath": "dist/libs/util"},
        }
    )


def _orchestrator(
    events,
    reader,
    tmp_path: Path,
    *,
    graph: FakeGraph | None = None,
    processes=None,
    options: ServeOptions | None = None,
) -> WatchOrchestrator:
    return WatchOrchestrator(
        events,
        BUILD,
        options or ServeOptions(build_target="api:build"),
        reader,
        graph or FakeGraph(),
        processes=processes or RecordingProcesses(),
        workspace_root=tmp_path,
        base_env={"PATH": os.environ.get("PATH", "")},
    )


async def _drain(orchestrator: WatchOrchestrator) -> list[BuildEvent]:
    return [event async for event in orchestrator.run()]


class TestCycles:
    """Tests for the per-event synchronize-and-restart cycle."""

    @pytest.mark.asyncio
    async def test_restart_scenario(self, reader, tmp_path: Path) -> None:
        processes = RecordingProcesses()
        events = [ok("out1.js"), failed("out1.js"), ok("out2.js")]
        orchestrator = _orchestrator(_events(*events), reader, tmp_path, processes=processes)

        observed = []
        async for event in orchestrator.run():
            observed.append((event, list(processes.log)))

        out1, out2 = tmp_path / "out1.js", tmp_path / "out2.js"
        assert [entry for entry, _ in observed] == events
        assert observed[0][1] == [("start", out1)]
        assert observed[1][1] == [("start", out1), ("stop", out1)]
        assert observed[2][1] == [("start", out1), ("stop", out1), ("start", out2)]
        assert processes.current == out2

    @pytest.mark.asyncio
    async def test_events_are_forwarded_unchanged(self, reader, tmp_path: Path) -> None:
        events = [ok("a.js"), failed("a.js"), ok("/abs/b.js")]
        orchestrator = _orchestrator(_events(*events), reader, tmp_path)
        observed = await _drain(orchestrator)
        assert len(observed) == 3
        assert all(a is b for a, b in zip(observed, events))

    @pytest.mark.asyncio
    async def test_absolute_output_file_is_used_as_is(self, reader, tmp_path: Path) -> None:
        processes = RecordingProcesses()
        await _drain(_orchestrator(_events(ok("/abs/b.js")), reader, tmp_path, processes=processes))
        assert processes.log == [("start", Path("/abs/b.js"))]

    @pytest.mark.asyncio
    async def test_policy_resolved_once(self, reader, tmp_path: Path) -> None:
        orchestrator = _orchestrator(_events(ok("a.js"), ok("a.js"), ok("a.js")), reader, tmp_path)
        await _drain(orchestrator)
        build_reads = [call for call in reader.calls if call == BUILD]
        # policy and snapshot location, both on the first event only
        assert len(build_reads) == 2
        assert orchestrator.policy is not None and orchestrator.policy.is_bundled is False
        assert orchestrator.cycles == 3

    @pytest.mark.asyncio
    async def test_graph_queried_every_cycle(self, reader, tmp_path: Path) -> None:
        graph = FakeGraph()
        await _drain(_orchestrator(_events(ok("a.js"), ok("a.js")), reader, tmp_path, graph=graph))
        assert graph.calls == 2

    @pytest.mark.asyncio
    async def test_links_dependencies_before_starting(self, reader, tmp_path: Path) -> None:
        (tmp_path / "dist" / "libs" / "util").mkdir(parents=True)
        graph = FakeGraph({"api": [edge("util", "@acme/util")]})
        processes = RecordingProcesses()
        await _drain(
            _orchestrator(_events(ok("a.js")), reader, tmp_path, graph=graph, processes=processes)
        )
        link = tmp_path / "dist" / "apps" / "api" / "node_modules" / "@acme" / "util"
        assert link.is_symlink()
        assert processes.log == [("start", tmp_path / "a.js")]

    @pytest.mark.asyncio
    async def test_unavailable_dependency_fails_cycle_only(
        self, reader, tmp_path: Path
    ) -> None:
        graph = FakeGraph({"api": [edge("util")]})
        processes = RecordingProcesses()
        events = [ok("a.js"), ok("b.js")]

        async def stream() -> AsyncIterator[BuildEvent]:
            yield events[0]
            (tmp_path / "dist" / "libs" / "util").mkdir(parents=True)
            yield events[1]

        orchestrator = _orchestrator(stream(), reader, tmp_path, graph=graph, processes=processes)
        observed = []
        async for event in orchestrator.run():
            observed.append(event)
            if len(observed) == 1:
                assert orchestrator.state == CycleState.FAILED
                assert processes.log == []

        assert observed == events
        assert processes.log == [("start", tmp_path / "b.js")]

    @pytest.mark.asyncio
    async def test_unavailable_dependency_keeps_current_server(
        self, reader, tmp_path: Path
    ) -> None:
        graph = FakeGraph()
        processes = RecordingProcesses()

        async def stream() -> AsyncIterator[BuildEvent]:
            yield ok("a.js")
            graph.edges["api"] = [edge("util")]
            yield ok("b.js")

        await _drain(_orchestrator(stream(), reader, tmp_path, graph=graph, processes=processes))
        assert processes.log == [("start", tmp_path / "a.js")]
        assert processes.current == tmp_path / "a.js"

    @pytest.mark.asyncio
    async def test_output_file_only_target_is_served(self, tmp_path: Path) -> None:
        reader = DictTargetReader(
            {"api:build": {"format": ["cjs"], "bundle": True, "outputFile": "dist/api/main.js"}}
        )
        processes = RecordingProcesses()
        orchestrator = _orchestrator(
            _events(ok("dist/api/main.js")), reader, tmp_path, processes=processes
        )

        await _drain(orchestrator)

        assert processes.log == [("start", tmp_path / "dist" / "api" / "main.js")]
        assert (tmp_path / "dist" / "api" / "node_modules").is_dir()

    @pytest.mark.asyncio
    async def test_unreadable_workspace_fails_cycle_only(
        self, write_workspace, tmp_path: Path
    ) -> None:
        projects = {
            "api": {
                "root": "apps/api",
                "targets": {
                    "build": {
                        "options": {"format": ["cjs"], "bundle": False, "outputPath": "dist/api"}
                    }
                },
            }
        }
        root = write_workspace(projects)
        workspace = FileWorkspace(root)
        processes = RecordingProcesses()
        events = [ok("a.js"), ok("b.js"), ok("c.js")]

        async def stream() -> AsyncIterator[BuildEvent]:
            yield events[0]
            (root / "workspace.json").write_text("{ half-written")
            yield events[1]
            write_workspace(projects)
            yield events[2]

        orchestrator = WatchOrchestrator(
            stream(),
            BUILD,
            ServeOptions(build_target="api:build"),
            workspace,
            workspace,
            processes=processes,
            workspace_root=root,
            base_env={},
        )
        observed = []
        states = []
        async for event in orchestrator.run():
            observed.append(event)
            states.append(orchestrator.state)

        assert observed == events
        assert states == [CycleState.IDLE, CycleState.FAILED, CycleState.IDLE]
        assert processes.log == [
            ("start", root / "a.js"),
            ("stop", root / "a.js"),
            ("start", root / "c.js"),
        ]

    @pytest.mark.asyncio
    async def test_spawn_failure_continues_session(self, reader, tmp_path: Path) -> None:
        processes = RecordingProcesses(fail_spawn=True)
        orchestrator = _orchestrator(
            _events(ok("a.js"), ok("b.js")), reader, tmp_path, processes=processes
        )
        states = []
        async for _ in orchestrator.run():
            states.append(orchestrator.state)
        assert states == [CycleState.FAILED, CycleState.FAILED]
        assert processes.current is None

    @pytest.mark.asyncio
    async def test_successful_cycle_returns_to_idle(self, reader, tmp_path: Path) -> None:
        orchestrator = _orchestrator(_events(ok("a.js")), reader, tmp_path)
        async for _ in orchestrator.run():
            assert orchestrator.state == CycleState.IDLE

    @pytest.mark.asyncio
    async def test_esm_resolution_flag_in_env(self, tmp_path: Path) -> None:
        reader = DictTargetReader(
            {"api:build": {"format": ["esm"], "bundle": False, "outputPath": "dist/api"}}
        )
        processes = RecordingProcesses()
        options = ServeOptions(build_target="api:build", experimental_node_resolution=True)
        await _drain(
            _orchestrator(_events(ok("a.js")), reader, tmp_path, processes=processes, options=options)
        )
        assert NODE_RESOLUTION_FLAG in processes.envs[0][NODE_OPTIONS_ENV]


class TestSession:
    """Tests for session-level behaviour."""

    @pytest.mark.asyncio
    async def test_missing_build_configuration_ends_session(self, tmp_path: Path) -> None:
        orchestrator = _orchestrator(_events(ok("a.js")), DictTargetReader({}), tmp_path)
        with pytest.raises(ConfigurationMissingError):
            await _drain(orchestrator)

    @pytest.mark.asyncio
    async def test_upstream_failure_ends_session_and_keeps_process(
        self, reader, tmp_path: Path
    ) -> None:
        processes = RecordingProcesses()

        async def stream() -> AsyncIterator[BuildEvent]:
            yield ok("a.js")
            raise OSError("watcher died")

        orchestrator = _orchestrator(stream(), reader, tmp_path, processes=processes)
        observed = []
        with pytest.raises(UpstreamStreamError) as exc_info:
            async for event in orchestrator.run():
                observed.append(event)

        assert len(observed) == 1
        assert isinstance(exc_info.value.__cause__, OSError)
        assert processes.current == tmp_path / "a.js"

    @pytest.mark.asyncio
    async def test_stream_end_leaves_process_running(self, reader, tmp_path: Path) -> None:
        processes = RecordingProcesses()
        orchestrator = _orchestrator(_events(ok("a.js")), reader, tmp_path, processes=processes)
        await _drain(orchestrator)
        assert processes.current == tmp_path / "a.js"

        await orchestrator.stop()
        assert processes.current is None

    @pytest.mark.asyncio
    async def test_run_is_not_restartable(self, reader, tmp_path: Path) -> None:
        orchestrator = _orchestrator(_events(ok("a.js")), reader, tmp_path)
        await _drain(orchestrator)
        with pytest.raises(RuntimeError):
            await _drain(orchestrator)

    @pytest.mark.asyncio
    async def test_real_processes_never_overlap(
        self, reader, tmp_path: Path, python_runtime, server_script: Path
    ) -> None:
        processes = ProcessLifecycleManager(python_runtime)
        events = [ok(str(server_script))] * 3
        orchestrator = _orchestrator(_events(*events), reader, tmp_path, processes=processes)

        handles = []
        try:
            async for _ in orchestrator.run():
                assert processes.current is not None
                handles.append(processes.current)
                assert all(h.returncode is not None for h in handles[:-1])
                assert handles[-1].returncode is None
        finally:
            await orchestrator.stop()

        assert len(handles) == 3
        assert all(h.returncode is not None for h in handles)
