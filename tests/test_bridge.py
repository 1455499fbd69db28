"""
Tests for AgentBridge: dedup, naming, terminal exit and completion matching.
"""

import os
import tempfile
import shutil
import sqlite3
import pytest
from unittest.mock import patch

# Add parent directory to path for imports
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from agent_monitor import events as channels
from agent_monitor.bridge import AgentBridge
from agent_monitor.events import EventBus
from agent_monitor.models import AgentStatus
from agent_monitor.registry import AgentRegistry
from agent_monitor.stream_analyzer import StreamAnalyzer
from fixtures import EventRecorder, FakeClock, FakeTimer, SAMPLE_AGENT_SPAWN, make_db_path


def spawn_data(name='reviewer', terminal_id=1, timestamp=100.0, description=None):
    return {
        'terminal_id': terminal_id,
        'agent_name': name,
        'description': description,
        'timestamp': timestamp,
        'is_real_agent': True,
        'session_id': None,
    }


class TestAgentBridge:

    @pytest.fixture
    def temp_workspace(self):
        temp_dir = tempfile.mkdtemp(prefix="test_bridge_")
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    @pytest.fixture
    def registry(self, temp_workspace):
        return AgentRegistry(db_path=make_db_path(temp_workspace), clock=FakeClock())

    @pytest.fixture
    def bridge(self, registry):
        return AgentBridge(registry, dedup_window=5.0, cwd='/work/project')

    # ------------------------------------------------------------------
    # Spawn dedup and naming
    # ------------------------------------------------------------------

    def test_duplicate_within_window_is_dropped(self, bridge, registry):
        first = bridge.handle_agent_spawn(spawn_data(timestamp=100.0))
        second = bridge.handle_agent_spawn(spawn_data(timestamp=102.0))

        assert first is not None
        assert second is None
        assert len(registry.get_all_agents()) == 1

    def test_repeat_after_window_gets_instance_number(self, bridge, registry):
        bridge.handle_agent_spawn(spawn_data(timestamp=100.0))
        bridge.handle_agent_spawn(spawn_data(timestamp=106.0))

        assert [a.name for a in registry.get_all_agents()] == ['reviewer', 'reviewer #2']

    def test_same_name_on_other_terminal_is_not_a_duplicate(self, bridge, registry):
        bridge.handle_agent_spawn(spawn_data(terminal_id=1, timestamp=100.0))
        bridge.handle_agent_spawn(spawn_data(terminal_id=2, timestamp=100.5))

        assert [a.name for a in registry.get_all_agents()] == ['reviewer', 'reviewer #2']

    def test_failed_spawn_does_not_suppress_or_consume_a_number(self, bridge, registry):
        bridge.handle_agent_spawn(spawn_data(timestamp=100.0))

        with patch('agent_monitor.state_db.register_agent',
                   side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(sqlite3.OperationalError):
                bridge.handle_agent_spawn(spawn_data(timestamp=106.0))

        retried = bridge.handle_agent_spawn(spawn_data(timestamp=107.0))

        assert retried is not None
        assert [a.name for a in registry.get_all_agents()] == ['reviewer', 'reviewer #2']

    def test_failed_first_spawn_leaves_no_dedup_entry(self, bridge, registry):
        with patch('agent_monitor.state_db.register_agent',
                   side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(sqlite3.OperationalError):
                bridge.handle_agent_spawn(spawn_data(timestamp=100.0))

        agent = bridge.handle_agent_spawn(spawn_data(timestamp=100.5))

        assert agent is not None
        assert agent.name == 'reviewer'

    def test_spawned_agent_is_active_and_announced(self, bridge, registry):
        detected = EventRecorder(bridge.events, channels.AGENT_DETECTED)

        agent = bridge.handle_agent_spawn(spawn_data(description='review the diff'))

        stored = registry.get_agent(agent.id)
        assert stored.status == AgentStatus.ACTIVE
        assert stored.cwd == '/work/project'
        assert stored.initial_prompt == 'review the diff'
        payload = detected.of(channels.AGENT_DETECTED)[0][0]
        assert payload == {
            'id': agent.id,
            'name': 'reviewer',
            'description': 'review the diff',
            'terminal_id': 1,
        }
        assert bridge.get_terminal_agents(1) == [agent.id]

    def test_dedup_table_purged_past_threshold(self, registry):
        bridge = AgentBridge(registry, dedup_window=5.0, purge_threshold=3)
        for index, name in enumerate(['a-1', 'a-2', 'a-3']):
            bridge.handle_agent_spawn(spawn_data(name=name, timestamp=float(index)))
        assert bridge.dedup_size() == 3

        bridge.handle_agent_spawn(spawn_data(name='a-4', timestamp=100.0))

        assert bridge.dedup_size() == 1

    def test_clear_keeps_instance_counters(self, bridge, registry):
        bridge.handle_agent_spawn(spawn_data(timestamp=100.0))
        bridge.clear()

        bridge.handle_agent_spawn(spawn_data(timestamp=101.0))

        assert bridge.dedup_size() == 1
        assert registry.get_all_agents()[-1].name == 'reviewer #2'

    # ------------------------------------------------------------------
    # Terminal exit
    # ------------------------------------------------------------------

    def test_terminal_exit_terminates_only_live_agents(self, bridge, registry):
        running = bridge.handle_agent_spawn(spawn_data(name='planner'))
        finished = bridge.handle_agent_spawn(spawn_data(name='tester'))
        other = bridge.handle_agent_spawn(spawn_data(name='coder', terminal_id=2))
        registry.complete(finished.id)

        assert bridge.handle_terminal_exited(1) == 1

        assert registry.get_agent(running.id).status == AgentStatus.TERMINATED
        assert registry.get_agent(finished.id).status == AgentStatus.COMPLETED
        assert registry.get_agent(other.id).status == AgentStatus.ACTIVE
        assert bridge.get_terminal_agents(1) == []
        assert bridge.handle_terminal_exited(1) == 0

    def test_terminal_bus_exit_payloads(self, bridge, registry):
        terminal_bus = EventBus("terminals")
        bridge.wire(EventBus("analyzer"), terminal_bus)
        first = bridge.handle_agent_spawn(spawn_data(name='planner', terminal_id=1))
        second = bridge.handle_agent_spawn(spawn_data(name='tester', terminal_id=2))

        terminal_bus.emit(channels.TERMINAL_EXITED, {'terminal_id': 1})
        terminal_bus.emit(channels.TERMINAL_EXITED, 2)

        assert registry.get_agent(first.id).status == AgentStatus.TERMINATED
        assert registry.get_agent(second.id).status == AgentStatus.TERMINATED

    # ------------------------------------------------------------------
    # Completion and activity
    # ------------------------------------------------------------------

    def test_complete_by_name_matches_numbered_instance(self, bridge, registry):
        first = bridge.handle_agent_spawn(spawn_data(timestamp=100.0))
        second = bridge.handle_agent_spawn(spawn_data(timestamp=110.0))
        registry.complete(first.id)

        completed = bridge.handle_agent_complete({
            'terminal_id': 1, 'agent_id': '', 'agent_name': 'Reviewer', 'reason': 'completed',
        })

        assert completed == second.id
        assert registry.get_agent(second.id).exit_code == 0

    def test_complete_with_error_reason_uses_exit_code_one(self, bridge, registry):
        agent = bridge.handle_agent_spawn(spawn_data())
        errors = EventRecorder(registry.events, channels.AGENT_ERROR)

        bridge.handle_agent_complete({'terminal_id': 1, 'agent_name': 'reviewer', 'reason': 'error'})

        done = registry.get_agent(agent.id)
        assert done.status == AgentStatus.COMPLETED
        assert done.exit_code == 1
        assert len(errors.of(channels.AGENT_ERROR)) == 1

    def test_complete_by_id_prefix(self, bridge, registry):
        agent = bridge.handle_agent_spawn(spawn_data())

        completed = bridge.handle_agent_complete({'terminal_id': 1, 'agent_id': agent.id[:8]})

        assert completed == agent.id

    def test_complete_without_match(self, bridge):
        bridge.handle_agent_spawn(spawn_data())

        assert bridge.handle_agent_complete({'terminal_id': 1, 'agent_name': 'someone-else'}) is None
        assert bridge.handle_agent_complete({'terminal_id': 9, 'agent_name': 'reviewer'}) is None

    def test_activity_refreshes_live_agents(self, bridge, registry):
        agent = bridge.handle_agent_spawn(spawn_data())
        before = registry.get_agent(agent.id).last_activity
        registry._clock.advance(30)

        bridge.handle_agent_activity({'terminal_id': 1, 'agent_name': None, 'activity': 'working'})

        assert registry.get_agent(agent.id).last_activity > before


def test_analyzer_detection_reaches_registry():
    temp_dir = tempfile.mkdtemp(prefix="test_bridge_e2e_")
    try:
        registry = AgentRegistry(db_path=make_db_path(temp_dir), clock=FakeClock())
        analyzer_bus = EventBus("analyzer")
        analyzer = StreamAnalyzer(events=analyzer_bus, clock=FakeTimer())
        bridge = AgentBridge(registry)
        bridge.wire(analyzer_bus)

        analyzer.analyze(1, SAMPLE_AGENT_SPAWN)
        analyzer.analyze(1, SAMPLE_AGENT_SPAWN)

        agents = registry.get_all_agents()
        assert [a.name for a in agents] == ['database-expert']
        assert agents[0].initial_prompt == 'optimize query performance'
        assert agents[0].status == AgentStatus.ACTIVE

        bridge.unwire()
        assert analyzer_bus.listener_count(channels.AGENT_SPAWN) == 0
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)
