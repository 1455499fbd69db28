"""
Pattern table for the terminal stream analyzer.

Detection is heuristic: patterns are tuned against Claude CLI output and will
both miss and over-match. Extractors return ``{"skip": True}`` to drop a
match that fired on something that is not really an agent (usually a
built-in tool name).
"""

import re
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Match, Optional, Pattern

from .models import StreamEventType

logger = logging.getLogger(__name__)

Extractor = Callable[[Match], Dict[str, Any]]


# ============================================================================
# TOOL NAMES - these are NOT agents, never register them as agents
# ============================================================================

TOOL_NAMES = frozenset({
    'Read', 'Write', 'Edit', 'Bash', 'Glob', 'Grep', 'Task', 'TaskOutput',
    'WebFetch', 'WebSearch', 'NotebookEdit', 'AskUserQuestion', 'TodoWrite',
    'Skill', 'EnterPlanMode', 'ExitPlanMode', 'LSP', 'KillShell', 'Explore',
})

_NUMBERED_TOOL_RE = re.compile(
    r'^(?:' + '|'.join(sorted(TOOL_NAMES, key=len, reverse=True)) + r')\s*#\d+$'
)


def is_tool_name(name: Optional[str]) -> bool:
    """
    Check if a name is a built-in tool rather than an agent.

    Matches the bare tool identifiers and numbered variants such as
    "Explore #2" or "Read #3". Matching is case-sensitive in both forms,
    since tools always print with their canonical capitalization.
    """
    if not name:
        return False
    name = name.strip()
    return name in TOOL_NAMES or bool(_NUMBERED_TOOL_RE.match(name))


# ============================================================================
# ESCAPE SEQUENCES
# ============================================================================

# OSC (ESC ] ... BEL|ST), CSI (ESC [ params final) and two-byte Fe escapes
ANSI_ESCAPE_RE = re.compile(
    r'\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)'
    r'|\x1b\[[0-9;?]*[ -/]*[@-~]'
    r'|\x1b[@-Z\\-_]'
)


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE_RE.sub('', text)


# ============================================================================
# PATTERN DEFINITION
# ============================================================================

@dataclass
class PatternDefinition:
    name: str
    pattern: Pattern
    event_type: StreamEventType
    extract: Optional[Extractor] = None

    def apply(self, text: str) -> Optional[Dict[str, Any]]:
        """
        Run the pattern against text.

        Returns:
            Extracted event data, ``{}`` for a match without an extractor,
            or None when the pattern does not match.
        """
        match = self.pattern.search(text)
        if not match:
            return None
        if self.extract is None:
            return {}
        return self.extract(match)


SKIP = {'agent_name': '', 'skip': True}


# ============================================================================
# EXTRACTORS
# ============================================================================

def _named_agent(source: str, description: Optional[str] = None) -> Extractor:
    def extract(match: Match) -> Dict[str, Any]:
        agent_name = match.group(1)
        if is_tool_name(agent_name):
            return dict(SKIP)
        return {
            'agent_name': agent_name,
            'description': description.format(name=agent_name) if description else None,
            'source': source,
            'is_real_agent': True,
            'full_match': match.group(0),
        }
    return extract


def _extract_cli_format(match: Match) -> Dict[str, Any]:
    agent_name = match.group(1)
    if is_tool_name(agent_name):
        return dict(SKIP)
    return {
        'agent_name': agent_name,
        'description': match.group(2).strip(),
        'source': 'claude_cli_format',
        'is_real_agent': True,
        'full_match': match.group(0),
    }


def _extract_task_description(match: Match) -> Dict[str, Any]:
    description = match.group(1).strip()
    # Handled by task_tool_spawn with the real agent type
    if 'subagent_type' in description:
        return dict(SKIP)
    words = description.split()[:4]
    task_name = re.sub(r'[^a-z0-9-]', '', '-'.join(words).lower())
    return {
        'agent_name': f"task-{task_name or 'unnamed'}",
        'description': description,
        'source': 'task_description',
        'is_real_agent': True,
        'full_match': match.group(0),
    }


def _completed_by_name(reason: str) -> Extractor:
    def extract(match: Match) -> Dict[str, Any]:
        agent_name = match.group(1)
        if is_tool_name(agent_name):
            return dict(SKIP)
        return {'agent_name': agent_name, 'reason': reason}
    return extract


def _extract_named_activity(match: Match) -> Dict[str, Any]:
    agent_name = match.group(1)
    if is_tool_name(agent_name):
        return dict(SKIP)
    return {'agent_name': agent_name, 'activity': match.group(2).lower()}


def _extract_cost(match: Match) -> Dict[str, Any]:
    try:
        return {'cost_usd': float(match.group(1))}
    except ValueError:
        return {'skip': True}


# ============================================================================
# PATTERN DEFINITIONS
# ============================================================================

STREAM_PATTERNS: List[PatternDefinition] = [
    # ------------------------------------------------------------------------
    # Agent spawn (Claude CLI specific)
    # ------------------------------------------------------------------------

    # "● database-expert (optimize query performance)"
    PatternDefinition(
        name='claude_cli_agent_format',
        pattern=re.compile(r'[●·✻✽✶✢*]\s*([a-z][a-z0-9]*(?:-[a-z0-9]+)+)\s*\(([^)]+)\)', re.IGNORECASE),
        event_type=StreamEventType.AGENT_SPAWN,
        extract=_extract_cli_format,
    ),
    # "@code-reviewer please look at ..."
    PatternDefinition(
        name='at_agent_invocation',
        pattern=re.compile(r'@([a-z][a-z0-9]*(?:-[a-z0-9]+)+)\s+', re.IGNORECASE),
        event_type=StreamEventType.AGENT_SPAWN,
        extract=_named_agent('at_invocation', 'Invoked via @{name}'),
    ),
    # Task(subagent_type="test-runner", ...)
    PatternDefinition(
        name='task_tool_spawn',
        pattern=re.compile(r'Task\s*\(?[^)]*subagent_type[:\s=]+["\']?([a-zA-Z][\w-]*)["\']?', re.IGNORECASE),
        event_type=StreamEventType.AGENT_SPAWN,
        extract=_named_agent('task_tool'),
    ),
    # Task(Investigate flaky login test)
    PatternDefinition(
        name='task_description_spawn',
        pattern=re.compile(r'[●·✻✽✶✢*-]?\s*Task\s*\(\s*([^)]{3,})\s*\)', re.IGNORECASE),
        event_type=StreamEventType.AGENT_SPAWN,
        extract=_extract_task_description,
    ),
    # "Create planner agent · Running"
    PatternDefinition(
        name='agent_spawn_create',
        pattern=re.compile(r'Create\s+([\w-]+)\s+agent\s+·\s+(?:Running|Launched)', re.IGNORECASE),
        event_type=StreamEventType.AGENT_SPAWN,
        extract=_named_agent('create_pattern', 'Created agent: {name}'),
    ),
    # "Spawning agent: researcher"
    PatternDefinition(
        name='agent_spawn_explicit',
        pattern=re.compile(r'(?:Spawning|Starting|Launching)\s+agent[:\s]+([a-zA-Z][\w-]*)', re.IGNORECASE),
        event_type=StreamEventType.AGENT_SPAWN,
        extract=_named_agent('explicit'),
    ),

    # ------------------------------------------------------------------------
    # Agent completion
    # ------------------------------------------------------------------------

    PatternDefinition(
        name='agent_complete_indicator',
        pattern=re.compile(r'agentId:\s*([a-f0-9-]+)', re.IGNORECASE),
        event_type=StreamEventType.AGENT_COMPLETE,
        extract=lambda match: {'agent_id': match.group(1)},
    ),
    PatternDefinition(
        name='agent_complete_done',
        pattern=re.compile(r'\[([a-zA-Z][\w-]+)\]\s*(?:completed|done|finished|exited)', re.IGNORECASE),
        event_type=StreamEventType.AGENT_COMPLETE,
        extract=_completed_by_name('completed'),
    ),
    PatternDefinition(
        name='agent_complete_failed',
        pattern=re.compile(r'\[([a-zA-Z][\w-]+)\]\s*(?:failed|errored|crashed)', re.IGNORECASE),
        event_type=StreamEventType.AGENT_COMPLETE,
        extract=_completed_by_name('error'),
    ),
    PatternDefinition(
        name='agent_complete_returned',
        pattern=re.compile(r'(?:←|<-|Returned from|Back from)\s*([a-zA-Z][\w-]+)', re.IGNORECASE),
        event_type=StreamEventType.AGENT_COMPLETE,
        extract=_completed_by_name('returned'),
    ),

    # ------------------------------------------------------------------------
    # Agent activity
    # ------------------------------------------------------------------------

    PatternDefinition(
        name='agent_activity_status',
        pattern=re.compile(
            r'\[([a-zA-Z][\w-]+)\]\s*(working|running|thinking|processing|searching|reading|writing)\b',
            re.IGNORECASE,
        ),
        event_type=StreamEventType.AGENT_ACTIVITY,
        extract=_extract_named_activity,
    ),
    # Tree-continuation lines printed under a running agent: "  ⎿  Read 42 lines"
    PatternDefinition(
        name='agent_activity_continuation',
        pattern=re.compile(r'^\s*⎿\s+(\S.*)$', re.MULTILINE),
        event_type=StreamEventType.AGENT_ACTIVITY,
        extract=lambda match: {'activity': match.group(1).strip()},
    ),

    # ------------------------------------------------------------------------
    # Tool usage
    # ------------------------------------------------------------------------

    PatternDefinition(
        name='tool_start',
        pattern=re.compile(r'\[Tool: (\w+)\]'),
        event_type=StreamEventType.TOOL_START,
        extract=lambda match: {'tool_name': match.group(1)},
    ),
    PatternDefinition(
        name='tool_start_verbose',
        pattern=re.compile(r'Calling tool: (\w+)', re.IGNORECASE),
        event_type=StreamEventType.TOOL_START,
        extract=lambda match: {'tool_name': match.group(1)},
    ),
    PatternDefinition(
        name='tool_end_success',
        pattern=re.compile(r'Tool (\w+) completed successfully', re.IGNORECASE),
        event_type=StreamEventType.TOOL_END,
        extract=lambda match: {'tool_name': match.group(1), 'success': True},
    ),
    PatternDefinition(
        name='tool_end_error',
        pattern=re.compile(r'Tool (\w+) failed: (.*)', re.IGNORECASE),
        event_type=StreamEventType.TOOL_END,
        extract=lambda match: {'tool_name': match.group(1), 'success': False, 'error': match.group(2)},
    ),

    # ------------------------------------------------------------------------
    # Thinking
    # ------------------------------------------------------------------------

    PatternDefinition(
        name='thinking_start',
        pattern=re.compile(r'<thinking>', re.IGNORECASE),
        event_type=StreamEventType.THINKING_START,
    ),
    PatternDefinition(
        name='thinking_end',
        pattern=re.compile(r'</thinking>', re.IGNORECASE),
        event_type=StreamEventType.THINKING_END,
    ),
    PatternDefinition(
        name='thinking_indicator',
        pattern=re.compile(r'^Thinking\.\.\.', re.MULTILINE),
        event_type=StreamEventType.THINKING_START,
    ),

    # ------------------------------------------------------------------------
    # Errors and warnings
    # ------------------------------------------------------------------------

    PatternDefinition(
        name='error_general',
        pattern=re.compile(r'Error: (.*)', re.IGNORECASE),
        event_type=StreamEventType.ERROR,
        extract=lambda match: {'message': match.group(1)},
    ),
    PatternDefinition(
        name='error_exception',
        pattern=re.compile(r'Exception: (.*)', re.IGNORECASE),
        event_type=StreamEventType.ERROR,
        extract=lambda match: {'message': match.group(1)},
    ),
    PatternDefinition(
        name='error_failed',
        pattern=re.compile(r'Failed to (.*)', re.IGNORECASE),
        event_type=StreamEventType.ERROR,
        extract=lambda match: {'message': f"Failed to {match.group(1)}"},
    ),
    PatternDefinition(
        name='warning',
        pattern=re.compile(r'Warning: (.*)', re.IGNORECASE),
        event_type=StreamEventType.WARNING,
        extract=lambda match: {'message': match.group(1)},
    ),

    # ------------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------------

    PatternDefinition(
        name='prompt_ready',
        pattern=re.compile(r'^>\s*$', re.MULTILINE),
        event_type=StreamEventType.PROMPT_READY,
    ),
    PatternDefinition(
        name='processing',
        pattern=re.compile(r'Processing\.\.\.', re.IGNORECASE),
        event_type=StreamEventType.PROCESSING,
    ),

    # ------------------------------------------------------------------------
    # Code blocks
    # ------------------------------------------------------------------------

    PatternDefinition(
        name='code_block_start',
        pattern=re.compile(r'```(\w+)?'),
        event_type=StreamEventType.CODE_BLOCK,
        extract=lambda match: {'language': match.group(1) or 'unknown', 'action': 'start'},
    ),
    PatternDefinition(
        name='code_block_end',
        pattern=re.compile(r'```$', re.MULTILINE),
        event_type=StreamEventType.CODE_BLOCK,
        extract=lambda match: {'action': 'end'},
    ),

    # ------------------------------------------------------------------------
    # File references
    # ------------------------------------------------------------------------

    PatternDefinition(
        name='file_read',
        pattern=re.compile(r'Reading file[:\s]+([^\s]+)', re.IGNORECASE),
        event_type=StreamEventType.FILE_REFERENCE,
        extract=lambda match: {'file': match.group(1), 'operation': 'read'},
    ),
    PatternDefinition(
        name='file_write',
        pattern=re.compile(r'Writing to file[:\s]+([^\s]+)', re.IGNORECASE),
        event_type=StreamEventType.FILE_REFERENCE,
        extract=lambda match: {'file': match.group(1), 'operation': 'write'},
    ),
    PatternDefinition(
        name='file_edit',
        pattern=re.compile(r'Editing[:\s]+([^\s]+)', re.IGNORECASE),
        event_type=StreamEventType.FILE_REFERENCE,
        extract=lambda match: {'file': match.group(1), 'operation': 'edit'},
    ),

    # ------------------------------------------------------------------------
    # Cost and tokens
    # ------------------------------------------------------------------------

    PatternDefinition(
        name='cost_update',
        pattern=re.compile(r'Cost[:\s]+\$?([\d.]+)', re.IGNORECASE),
        event_type=StreamEventType.COST_UPDATE,
        extract=_extract_cost,
    ),
    PatternDefinition(
        name='token_usage',
        pattern=re.compile(r'Tokens?[:\s]+(\d+)', re.IGNORECASE),
        event_type=StreamEventType.TOKEN_USAGE,
        extract=lambda match: {'tokens': int(match.group(1))},
    ),
]


__all__ = [
    'TOOL_NAMES',
    'is_tool_name',
    'ANSI_ESCAPE_RE',
    'strip_ansi',
    'PatternDefinition',
    'STREAM_PATTERNS',
]
