from .adapter import EVMChainGateway
from .admin import RelayAdmin
from .schemas import EVMECDSASignature
from .signatures import (
    build_meta_transaction_typed_data,
    sign_meta_transaction,
)
from .verifies import (
    compute_domain_separator,
    hash_meta_transaction,
    recover_meta_transaction_signer,
    verify_meta_transaction_signature,
)

__all__ = [
    "EVMChainGateway",
    "RelayAdmin",
    "EVMECDSASignature",
    "build_meta_transaction_typed_data",
    "sign_meta_transaction",
    "compute_domain_separator",
    "hash_meta_transaction",
    "recover_meta_transaction_signer",
    "verify_meta_transaction_signature",
]
