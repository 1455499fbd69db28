"""
Tests for EventBus and SessionAgentMap.
"""

import os

# Add parent directory to path for imports
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent_monitor.events import EventBus
from agent_monitor.session_map import SessionAgentMap


class TestEventBus:

    def test_emit_delivers_in_subscription_order(self):
        bus = EventBus("test")
        received = []
        bus.on('x', lambda value: received.append(('first', value)))
        bus.on('x', lambda value: received.append(('second', value)))

        assert bus.emit('x', 1) == 2
        assert received == [('first', 1), ('second', 1)]

    def test_failing_listener_does_not_stop_others(self):
        bus = EventBus("test")
        received = []

        def broken(value):
            raise RuntimeError("listener bug")

        bus.on('x', broken)
        bus.on('x', received.append)

        assert bus.emit('x', 'payload') == 2
        assert received == ['payload']

    def test_off_and_remove_all(self):
        bus = EventBus("test")
        listener = bus.on('x', lambda: None)
        bus.on('y', lambda: None)

        assert bus.off('x', listener)
        assert not bus.off('x', listener)
        assert bus.emit('x') == 0

        bus.remove_all_listeners()
        assert bus.listener_count('y') == 0


class TestSessionAgentMap:

    def test_set_get_remove(self):
        sessions = SessionAgentMap()
        sessions.set('s1', 'a1')

        assert sessions.get('s1') == 'a1'
        assert 's1' in sessions
        assert sessions.remove('s1')
        assert not sessions.remove('s1')
        assert sessions.get('s1') is None

    def test_clear_for_agent(self):
        sessions = SessionAgentMap()
        sessions.set('s1', 'a1')
        sessions.set('s2', 'a1')
        sessions.set('s3', 'a2')

        assert sessions.clear_for_agent('a1') == 2
        assert len(sessions) == 1

    def test_validate(self):
        sessions = SessionAgentMap()
        sessions.set('s1', 'live')
        sessions.set('s2', 'gone')

        removed = sessions.validate(lambda agent_id: agent_id == 'live')

        assert removed == ['s2']
        assert sessions.get('s1') == 'live'
