"""Centralized constants for node kinds, trigger kinds and record states.

Single source of truth for the node-kind tags stored in workflow
definitions; the handler registry, publish validation and the graph walker
all read from here.
"""

from typing import Dict, FrozenSet

# =============================================================================
# TRIGGER NODE TYPES
# =============================================================================

MANUAL_TRIGGER = 'manual-trigger'
FORM_TRIGGER = 'form-trigger'
WEBHOOK_TRIGGER = 'webhook-trigger'
SCHEDULE_TRIGGER = 'schedule-trigger'
API_TRIGGER = 'api-trigger'

TRIGGER_NODE_TYPES: FrozenSet[str] = frozenset([
    MANUAL_TRIGGER,
    FORM_TRIGGER,
    WEBHOOK_TRIGGER,
    SCHEDULE_TRIGGER,
    API_TRIGGER,
])

# Firing trigger kind -> node types that act as the active root for it.
# When a definition has no matching node, the walker falls back to a
# manual-trigger node, then to the first trigger node.
TRIGGER_KIND_NODE_TYPES: Dict[str, FrozenSet[str]] = {
    'manual': frozenset([MANUAL_TRIGGER]),
    'form_submission': frozenset([FORM_TRIGGER]),
    'webhook': frozenset([WEBHOOK_TRIGGER]),
    'schedule': frozenset([SCHEDULE_TRIGGER]),
    'api': frozenset([API_TRIGGER]),
}

TRIGGER_KINDS: FrozenSet[str] = frozenset(TRIGGER_KIND_NODE_TYPES)

# =============================================================================
# LOGIC NODE TYPES
# =============================================================================

CONDITIONAL = 'conditional'
SWITCH = 'switch'
DELAY = 'delay'

LOGIC_NODE_TYPES: FrozenSet[str] = frozenset([CONDITIONAL, SWITCH, DELAY])

# Nodes whose output selects which outgoing edges are followed
BRANCHING_NODE_TYPES: FrozenSet[str] = frozenset([CONDITIONAL, SWITCH])

# =============================================================================
# DATA NODE TYPES
# =============================================================================

DATA_NODE_TYPES: FrozenSet[str] = frozenset([
    'transform',
    'filter',
    'merge',
])

STORE_NODE_TYPES: FrozenSet[str] = frozenset([
    'store-query',
    'store-write',
])

# =============================================================================
# ACTION NODE TYPES
# =============================================================================

ACTION_NODE_TYPES: FrozenSet[str] = frozenset([
    'http-request',
    'email-send',
    'slack-message',
])

AI_NODE_TYPES: FrozenSet[str] = frozenset([
    'ai-prompt',
])

ALL_NODE_TYPES: FrozenSet[str] = (
    TRIGGER_NODE_TYPES
    | LOGIC_NODE_TYPES
    | DATA_NODE_TYPES
    | STORE_NODE_TYPES
    | ACTION_NODE_TYPES
    | AI_NODE_TYPES
)

# =============================================================================
# RECORD STATES
# =============================================================================

WORKFLOW_STATUSES: FrozenSet[str] = frozenset(['draft', 'active', 'paused', 'archived'])

DEFAULT_BRANCH_HANDLE = 'default'
