"""
Tests for the stream pattern table and tool-name filtering.
"""

import os
import re
import pytest

# Add parent directory to path for imports
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agent_monitor.models import StreamEventType
from agent_monitor.patterns import (
    STREAM_PATTERNS,
    TOOL_NAMES,
    PatternDefinition,
    is_tool_name,
    strip_ansi,
)


def _pattern(name: str) -> PatternDefinition:
    for pattern_def in STREAM_PATTERNS:
        if pattern_def.name == name:
            return pattern_def
    raise KeyError(name)


class TestToolNames:
    """Built-in tools must never be mistaken for agents."""

    @pytest.mark.parametrize("name", sorted(TOOL_NAMES))
    def test_every_tool_name_is_recognized(self, name):
        assert is_tool_name(name)

    @pytest.mark.parametrize("name", ["Explore #2", "Read #3", "Task #10", "Grep#7", "  Explore #4  "])
    def test_numbered_variants(self, name):
        assert is_tool_name(name)

    @pytest.mark.parametrize("name", ["Read #foo", "Explore #", "Explore #2b", "Task #10 notes"])
    def test_numbered_suffix_must_be_a_number(self, name):
        assert not is_tool_name(name)

    @pytest.mark.parametrize("name", ["explore", "explore #4", "READ #2", "bash"])
    def test_matching_is_case_sensitive_for_both_forms(self, name):
        assert not is_tool_name(name)

    @pytest.mark.parametrize("name", ["database-expert", "Reader", "reviewer #2", "", None])
    def test_agent_names_are_not_tools(self, name):
        assert not is_tool_name(name)


class TestStripAnsi:

    def test_removes_csi_sequences(self):
        assert strip_ansi("\x1b[1;32m● reviewer\x1b[0m") == "● reviewer"

    def test_removes_osc_title(self):
        assert strip_ansi("\x1b]0;claude\x07ready") == "ready"

    def test_plain_text_untouched(self):
        assert strip_ansi("plain text") == "plain text"


class TestAgentSpawnPatterns:
    """Extraction from the spawn patterns."""

    def test_cli_agent_format(self):
        data = _pattern('claude_cli_agent_format').apply("● database-expert (optimize query performance)")

        assert data['agent_name'] == 'database-expert'
        assert data['description'] == 'optimize query performance'
        assert data['source'] == 'claude_cli_format'
        assert data['is_real_agent'] is True

    def test_cli_agent_format_requires_hyphenated_name(self):
        assert _pattern('claude_cli_agent_format').apply("● Read (src/main.py)") is None

    def test_at_invocation(self):
        data = _pattern('at_agent_invocation').apply("@code-reviewer please check the diff")

        assert data['agent_name'] == 'code-reviewer'
        assert data['description'] == 'Invoked via @code-reviewer'

    def test_task_tool_spawn_uses_subagent_type(self):
        data = _pattern('task_tool_spawn').apply('Task(subagent_type="test-runner", prompt="run it")')

        assert data['agent_name'] == 'test-runner'

    def test_task_description_skips_subagent_calls(self):
        data = _pattern('task_description_spawn').apply('Task(subagent_type="test-runner", prompt="run it")')

        assert data['skip'] is True

    def test_task_description_builds_slug_name(self):
        data = _pattern('task_description_spawn').apply("Task(Investigate flaky login test in CI)")

        assert data['agent_name'] == 'task-investigate-flaky-login-test'
        assert data['description'] == 'Investigate flaky login test in CI'

    def test_create_pattern(self):
        data = _pattern('agent_spawn_create').apply("Create planner agent · Running")

        assert data['agent_name'] == 'planner'
        assert data['description'] == 'Created agent: planner'

    def test_explicit_spawn(self):
        data = _pattern('agent_spawn_explicit').apply("Spawning agent: researcher")

        assert data['agent_name'] == 'researcher'

    def test_explicit_spawn_of_tool_is_skipped(self):
        data = _pattern('agent_spawn_explicit').apply("Starting agent Explore")

        assert data['skip'] is True


class TestCompletionAndActivityPatterns:

    def test_agent_id_indicator(self):
        data = _pattern('agent_complete_indicator').apply("agentId: a1b2c3d4-0000")
        assert data == {'agent_id': 'a1b2c3d4-0000'}

    @pytest.mark.parametrize("name,text,reason", [
        ('agent_complete_done', "[reviewer] completed", 'completed'),
        ('agent_complete_failed', "[reviewer] crashed", 'error'),
        ('agent_complete_returned', "Returned from reviewer", 'returned'),
    ])
    def test_completion_reasons(self, name, text, reason):
        data = _pattern(name).apply(text)

        assert data['agent_name'] == 'reviewer'
        assert data['reason'] == reason

    def test_activity_status(self):
        data = _pattern('agent_activity_status').apply("[reviewer] Searching for usages")

        assert data == {'agent_name': 'reviewer', 'activity': 'searching'}

    def test_continuation_line(self):
        data = _pattern('agent_activity_continuation').apply("  ⎿  Read 42 lines")

        assert data['activity'] == 'Read 42 lines'


class TestStatusPatterns:

    def test_tool_start_and_end(self):
        assert _pattern('tool_start').apply("[Tool: Read]") == {'tool_name': 'Read'}
        assert _pattern('tool_end_success').apply("Tool Read completed successfully") == {
            'tool_name': 'Read', 'success': True,
        }
        assert _pattern('tool_end_error').apply("Tool Bash failed: exit 2") == {
            'tool_name': 'Bash', 'success': False, 'error': 'exit 2',
        }

    def test_cost_update(self):
        assert _pattern('cost_update').apply("Cost: $0.42") == {'cost_usd': 0.42}

    def test_malformed_cost_is_skipped(self):
        assert _pattern('cost_update').apply("Cost: ...")['skip'] is True

    def test_token_usage(self):
        assert _pattern('token_usage').apply("Tokens: 1234") == {'tokens': 1234}

    def test_prompt_ready_only_on_bare_prompt_line(self):
        assert _pattern('prompt_ready').apply("output\n> \n") == {}
        assert _pattern('prompt_ready').apply("> some input") is None

    def test_pattern_without_extractor_returns_empty_dict(self):
        pattern_def = PatternDefinition(
            name='marker',
            pattern=re.compile(r'MARK'),
            event_type=StreamEventType.PROCESSING,
        )
        assert pattern_def.apply("a MARK b") == {}
        assert pattern_def.apply("nothing") is None


def test_every_event_type_has_a_pattern():
    covered = {pattern_def.event_type for pattern_def in STREAM_PATTERNS}
    assert covered == set(StreamEventType)
