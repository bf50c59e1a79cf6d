"""Centralized constants for deployment tags, states and chat commands.

This module provides a single source of truth for the closed vocabularies
shared by the deployment engine, the chat layer and the REST API.
"""

from typing import Dict, FrozenSet, Tuple

# =============================================================================
# DEPLOYMENT TAGS
# =============================================================================

DEPLOYMENT_TAGS: Tuple[str, ...] = ('web', 'backend', 'frontend', 'all')

# Ansible tags selected per deployment tag ('all' expands to every scope)
TAG_SCOPES: Dict[str, Tuple[str, ...]] = {
    'web': ('deploy-web',),
    'backend': ('deploy-backend',),
    'frontend': ('deploy-frontend',),
    'all': ('deploy-backend', 'deploy-frontend'),
}

# =============================================================================
# CHECK RUNS
# =============================================================================

CHECK_STATUS_COMPLETED = 'completed'

# =============================================================================
# PROVISIONING OUTPUT
# =============================================================================

# Ansible prints "TASK [role : Task name]" headers; the label group is reported
HIGHLIGHT_TEMPLATE = r"TASK \[(\w+ : )?(?P<label>{label})\]"

STREAM_CHUNK_SIZE = 4096

# Seconds to keep reading a child's pipes once it is gone; descendants that
# escaped its process group may hold them open indefinitely
PIPE_DRAIN_GRACE = 1.0

# =============================================================================
# CHAT
# =============================================================================

REACTION_PENDING = 'hourglass_flowing_sand'
REACTION_SUCCESS = 'white_check_mark'
REACTION_FAILURE = 'x'

COLOR_ERROR = '#900'
COLOR_SUCCESS = '#36a64f'

CANCEL_ACTION_ID = 'cancel_deployment'

PROFILE_PRODUCTION = 'production'
PROFILE_TEST = 'test'

SLACK_EVENT_TYPES: FrozenSet[str] = frozenset([
    'app_mention',
    'member_joined_channel',
])

# Maximum clock skew accepted on signed Slack requests (seconds)
SLACK_SIGNATURE_MAX_AGE = 60 * 5
