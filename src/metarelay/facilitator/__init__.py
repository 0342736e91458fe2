from .balances import BalanceGuard, RelayerHealth
from .nonces import NonceLedger
from .pricing import DEFAULT_TIER_MULTIPLIERS_BPS, GasPricer
from .ratelimit import FixedWindowRateLimiter, RateLimitStatus
from .settlement import SettlementRecorder, decode_revert_reason
from .state import KeyedLocks, RelayState
from .submitter import TransactionSubmitter
from .validator import parse_facilitation_request

__all__ = [
    "BalanceGuard",
    "RelayerHealth",
    "NonceLedger",
    "DEFAULT_TIER_MULTIPLIERS_BPS",
    "GasPricer",
    "FixedWindowRateLimiter",
    "RateLimitStatus",
    "SettlementRecorder",
    "decode_revert_reason",
    "KeyedLocks",
    "RelayState",
    "TransactionSubmitter",
    "parse_facilitation_request",
]
