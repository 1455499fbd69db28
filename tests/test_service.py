"""
End-to-end tests for the AgentMonitor composition root.
"""

import os
import tempfile
import shutil
import pytest
from unittest.mock import patch

# Add parent directory to path for imports
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from agent_monitor import events as channels
from agent_monitor import service, state_db
from agent_monitor.events import EventBus
from agent_monitor.models import AgentSpawnOptions, AgentStatus
from agent_monitor.service import AgentMonitor
from fixtures import (
    FakeClock,
    SAMPLE_AGENT_SPAWN,
    SAMPLE_TOOL_START,
    SAMPLE_TOOL_SUCCESS,
    make_db_path,
)


QUIET_POLICIES = {
    'activity_interval': 3600.0,
    'stale_interval': 3600.0,
    'garbage_interval': 3600.0,
    'cleanup_interval': 3600.0,
    'session_validation_interval': 3600.0,
}


class TestAgentMonitor:

    @pytest.fixture
    def temp_workspace(self):
        temp_dir = tempfile.mkdtemp(prefix="test_service_")
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    @pytest.fixture
    def terminal_bus(self):
        return EventBus("terminals")

    @pytest.fixture
    def monitor(self, temp_workspace, terminal_bus):
        monitor = AgentMonitor(
            db_path=make_db_path(temp_workspace),
            terminal_bus=terminal_bus,
            clock=FakeClock(),
            policy_options=QUIET_POLICIES,
        )
        yield monitor
        monitor.shutdown()

    def test_feed_output_registers_agent(self, monitor):
        events = monitor.feed_output(1, SAMPLE_AGENT_SPAWN)

        assert events[0].data['agent_name'] == 'database-expert'
        agents = monitor.registry.get_all_agents()
        assert [a.name for a in agents] == ['database-expert']
        assert agents[0].status == AgentStatus.ACTIVE

    def test_tool_usage_persisted_for_session(self, monitor):
        monitor.feed_output(1, SAMPLE_TOOL_START, session_id='sess-1')
        monitor.feed_output(1, SAMPLE_TOOL_SUCCESS, session_id='sess-1')

        usage = state_db.get_detailed_tool_usage(db_path=monitor.db_path, session_id='sess-1')
        assert len(usage) == 1
        assert usage[0]['tool_name'] == 'Read'
        assert usage[0]['success'] is True

    def test_terminal_exited_terminates_and_clears(self, monitor):
        monitor.feed_output(1, SAMPLE_AGENT_SPAWN)

        assert monitor.terminal_exited(1) == 1

        assert monitor.registry.get_active_agents() == []
        assert monitor.analyzer.get_metrics(1) is None

    def test_terminal_bus_exit(self, monitor, terminal_bus):
        monitor.feed_output(2, SAMPLE_AGENT_SPAWN)

        terminal_bus.emit(channels.TERMINAL_EXITED, {'terminal_id': 2})

        assert monitor.registry.get_active_agents() == []
        assert monitor.analyzer.get_buffer(2) == ''

    def test_hook_source_binds_sessions(self, monitor):
        hooks = EventBus("hooks")
        monitor.attach_hook_source(hooks)
        agent = monitor.registry.spawn(AgentSpawnOptions(name='planner', cwd='/work', session_path='sess-5'))

        hooks.emit(channels.SESSION_START, {'session_id': 'sess-5'})

        assert monitor.registry.sessions.get('sess-5') == agent.id

    def test_shutdown_is_idempotent_and_leaves_no_live_agents(self, monitor, terminal_bus):
        monitor.start()
        monitor.feed_output(1, SAMPLE_AGENT_SPAWN)
        monitor.registry.sessions.set('sess-1', monitor.registry.get_all_agents()[0].id)

        monitor.shutdown()
        monitor.shutdown()

        assert monitor.is_shut_down
        assert not monitor.policies.is_running
        assert monitor.registry.get_active_agents() == []
        assert len(monitor.registry.sessions) == 0
        assert terminal_bus.listener_count(channels.TERMINAL_EXITED) == 0
        assert monitor.feed_output(1, SAMPLE_AGENT_SPAWN) == []

    def test_active_terminals_enable_cleanup_policy(self, temp_workspace):
        monitor = AgentMonitor(
            db_path=make_db_path(temp_workspace),
            active_terminals=lambda: [1],
            policy_options=QUIET_POLICIES,
        )
        try:
            monitor.feed_output(1, "one")
            monitor.feed_output(2, "two")

            assert monitor.policies.run_terminal_cleanup() == 1
            assert monitor.analyzer.get_metrics(2) is None
        finally:
            monitor.shutdown()


class TestMonitorSingleton:

    def test_get_monitor_reuses_and_recreates(self):
        temp_dir = tempfile.mkdtemp(prefix="test_singleton_")
        try:
            db_path = make_db_path(temp_dir)
            with patch.object(service, '_monitor_instance', None):
                first = service.get_monitor(db_path)
                assert service.get_monitor(db_path) is first
                assert first.policies.is_running

                first.shutdown()
                second = service.get_monitor(db_path)
                assert second is not first

                service.shutdown_monitor()
                assert second.is_shut_down
                assert service._monitor_instance is None
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)
