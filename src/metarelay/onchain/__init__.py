from .local import LocalChainGateway, LocalTarget
from .relay import ContractRevert, PaymentToken, RelayContract, TargetReverted

__all__ = [
    "LocalChainGateway",
    "LocalTarget",
    "ContractRevert",
    "PaymentToken",
    "RelayContract",
    "TargetReverted",
]
