from .bases import ChainGateway
from .evm import EVMChainGateway, RelayAdmin

__all__ = [
    "ChainGateway",
    "EVMChainGateway",
    "RelayAdmin",
]
