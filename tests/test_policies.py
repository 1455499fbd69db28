"""
Tests for the background PolicyEngine.

Passes are driven synchronously with an injected clock; the thread tests only
check start/stop bookkeeping.
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
from agent_monitor.models import AgentSpawnOptions, AgentStatus
from agent_monitor.policies import PolicyEngine
from agent_monitor.registry import AgentRegistry
from fixtures import EventRecorder, FakeClock, make_db_path


LONG = 3600.0


class TestPolicyEngine:

    @pytest.fixture
    def temp_workspace(self):
        temp_dir = tempfile.mkdtemp(prefix="test_policies_")
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def registry(self, temp_workspace, clock):
        return AgentRegistry(db_path=make_db_path(temp_workspace), clock=clock)

    @pytest.fixture
    def engine(self, registry):
        engine = PolicyEngine(
            registry,
            activity_interval=LONG,
            stale_interval=LONG,
            garbage_interval=LONG,
            cleanup_interval=LONG,
            session_validation_interval=LONG,
        )
        yield engine
        engine.stop(timeout=1)

    def _active_agent(self, registry, name='reviewer'):
        agent = registry.spawn(AgentSpawnOptions(name=name, cwd='/work/project'))
        registry.mark_active(agent.id)
        return agent

    # ------------------------------------------------------------------
    # Idle detection
    # ------------------------------------------------------------------

    def test_idle_fires_once(self, engine, registry, clock):
        agent = self._active_agent(registry)
        idle_events = EventRecorder(registry.events, channels.AGENT_IDLE)
        clock.advance(31)

        assert engine.run_idle_check() == [agent.id]
        assert engine.run_idle_check() == []

        assert registry.get_agent(agent.id).status == AgentStatus.IDLE
        assert len(idle_events.of(channels.AGENT_IDLE)) == 1

    def test_recent_activity_stays_active(self, engine, registry, clock):
        agent = self._active_agent(registry)
        clock.advance(29)

        assert engine.run_idle_check() == []
        assert registry.get_agent(agent.id).status == AgentStatus.ACTIVE

    def test_activity_resets_idle_timer(self, engine, registry, clock):
        agent = self._active_agent(registry)
        clock.advance(20)
        registry.record_activity(agent.id)
        clock.advance(20)

        assert engine.run_idle_check() == []

    # ------------------------------------------------------------------
    # Stale termination
    # ------------------------------------------------------------------

    def test_stale_idle_agent_is_terminated(self, engine, registry, clock):
        agent = self._active_agent(registry)
        clock.advance(31)
        engine.run_idle_check()
        clock.advance(30 * 60 + 1)

        assert engine.run_stale_check() == [agent.id]
        assert registry.get_agent(agent.id).status == AgentStatus.TERMINATED

    def test_stale_check_ignores_non_idle_agents(self, engine, registry, clock):
        agent = self._active_agent(registry)
        clock.advance(2 * 3600)

        assert engine.run_stale_check() == []
        assert registry.get_agent(agent.id).status == AgentStatus.ACTIVE

    # ------------------------------------------------------------------
    # Cleanup passes
    # ------------------------------------------------------------------

    def test_garbage_cleanup(self, engine, registry):
        self._active_agent(registry, 'Read #3')
        keep = self._active_agent(registry, 'planner')

        assert engine.run_garbage_cleanup() == 1
        assert [a.id for a in registry.get_all_agents()] == [keep.id]

    def test_garbage_cleanup_reclaims_agents_stuck_before_activity(self, registry, clock):
        engine = PolicyEngine(registry, orphan_max_age=600)
        stuck = registry.spawn(AgentSpawnOptions(name='stuck-agent', cwd='/work/project'))
        clock.advance(601)

        # Neither idle nor stale checks look at agents that never became active
        assert engine.run_idle_check() == []
        assert engine.run_stale_check() == []
        assert engine.run_garbage_cleanup() == 1
        assert registry.get_agent(stuck.id) is None

    def test_stale_sweep(self, engine, registry, clock):
        self._active_agent(registry)
        clock.advance(25 * 3600)

        assert engine.run_stale_sweep() == 1
        assert registry.get_all_agents() == []

    def test_session_map_validation(self, engine, registry):
        agent = self._active_agent(registry)
        registry.sessions.set('s1', agent.id)
        registry.sessions.set('s2', 'missing')

        assert engine.validate_session_map() == 1
        assert 's1' in registry.sessions

    def test_terminal_cleanup_only_when_configured(self, registry):
        calls = []
        engine = PolicyEngine(registry, terminal_cleanup=lambda: calls.append(1) or 4)

        assert 'terminal_cleanup' in engine.intervals
        assert engine.run_terminal_cleanup() == 4
        assert calls == [1]
        assert PolicyEngine(registry).run_terminal_cleanup() == 0

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def test_trigger_scan_runs_every_pass(self, engine, registry, clock):
        self._active_agent(registry, 'Explore')
        clock.advance(31)

        results = engine.trigger_scan()

        assert set(results) == {'idle_check', 'stale_check', 'garbage_cleanup', 'stale_sweep', 'session_map_validation'}
        assert results['garbage_cleanup'] == 1
        assert set(engine.get_status()['last_run']) == set(results)

    def test_failing_pass_is_logged_not_raised(self, engine, registry):
        with patch.object(registry, 'cleanup_garbage_agents', side_effect=RuntimeError("boom")):
            results = engine.trigger_scan()

        assert results['garbage_cleanup'] is None
        assert results['idle_check'] == []

    def test_start_and_stop(self, engine):
        engine.start()
        assert engine.is_running
        assert len(engine.threads) == 5
        assert all(thread.daemon for thread in engine.threads)

        engine.start()
        assert len(engine.threads) == 5

        engine.stop(timeout=2)
        assert not engine.is_running
        assert engine.threads == []

    def test_start_runs_startup_passes(self, engine, registry, clock):
        self._active_agent(registry, 'TodoWrite')

        engine.start()

        assert registry.get_all_agents() == []
        assert {'garbage_cleanup', 'stale_sweep', 'stale_check'} <= set(engine.last_run)
