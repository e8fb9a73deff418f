"""
Environment promotion: acceptance -> QA -> QA sign-off -> production.

All promotion state lives in the registry's tag history.
"""

from .coordinator import PromotionCoordinator, build_coordinator
from .locks import EnvironmentLocks, RedisEnvironmentLocks
from .states import PromotionChain, PromotionEvent, PromotionStageResult, PromotionState, transition
from .tag_store import RegistryTagStore
from .versioning import LATEST, VersionTag

__all__ = [
    "PromotionCoordinator",
    "build_coordinator",
    "EnvironmentLocks",
    "RedisEnvironmentLocks",
    "PromotionChain",
    "PromotionEvent",
    "PromotionStageResult",
    "PromotionState",
    "transition",
    "RegistryTagStore",
    "LATEST",
    "VersionTag",
]
