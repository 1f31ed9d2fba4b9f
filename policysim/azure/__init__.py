"""Azure Resource Manager collaborators.

Read-only access to management groups, policy assignments, definitions,
exemptions and resources, with bounded retry and per-run caching.
"""

from .errors import (
    ArmError,
    ArmApiError,
    ArmNotFoundError,
    TransientArmError,
    RetryExhaustedError,
    HierarchyError,
    AssignmentResolutionError,
    ArmAuthenticationError,
)

from .retry import RetryPolicy, Retrier
from .client import ArmClient
from .cache import RunCache
from .hierarchy import Hierarchy, HierarchyWalker, ManagementGroup
from .assignments import AssignmentResolution, AssignmentResolver
from .exemptions import ExemptionCollector, ExemptionMatcher
from .resources import ResourceInventory, load_resources

__all__ = [
    # Errors
    'ArmError',
    'ArmApiError',
    'ArmNotFoundError',
    'TransientArmError',
    'RetryExhaustedError',
    'HierarchyError',
    'AssignmentResolutionError',
    'ArmAuthenticationError',

    # Transport
    'RetryPolicy',
    'Retrier',
    'ArmClient',
    'RunCache',

    # Collaborators
    'Hierarchy',
    'HierarchyWalker',
    'ManagementGroup',
    'AssignmentResolution',
    'AssignmentResolver',
    'ExemptionCollector',
    'ExemptionMatcher',
    'ResourceInventory',
    'load_resources',
]
