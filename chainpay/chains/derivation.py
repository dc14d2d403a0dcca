"""Deterministic receiving-address derivation from a chain's extended public key."""

from functools import lru_cache

from bip_utils import Base58ChecksumError, Bip32KeyError, Bip32Slip10Secp256k1, EthAddrEncoder, P2WPKHAddrEncoder

from chainpay.common.models import ChainFamily


class AddressDerivationError(ValueError):
    """Raised when an xpub cannot be parsed or a child cannot be derived."""


@lru_cache(maxsize=64)
def _account_node(xpub: str) -> Bip32Slip10Secp256k1:
    try:
        return Bip32Slip10Secp256k1.FromExtendedKey(xpub)
    except (ValueError, Base58ChecksumError, Bip32KeyError) as exc:
        raise AddressDerivationError(f"Invalid xpub provided: {exc}") from exc


def derive_address(xpub: str, index: int, family: ChainFamily = ChainFamily.ACCOUNT, hrp: str = "bc") -> str:
    """Address of the non-hardened child `index` of `xpub`.

    Pure function of its arguments, so an invoice's address can always be
    re-derived from its chain and derivation index.
    """

    if index < 0 or index >= 2**31:
        raise AddressDerivationError(f"derivation index out of range: {index}")
    try:
        child = _account_node(xpub).ChildKey(index)
    except Bip32KeyError as exc:
        raise AddressDerivationError(f"Unable to derive child {index}: {exc}") from exc
    public_key = child.PublicKey().KeyObject()
    if family == ChainFamily.UTXO:
        return P2WPKHAddrEncoder.EncodeKey(public_key, hrp=hrp)
    return EthAddrEncoder.EncodeKey(public_key)


class AddressDeriver:
    """Derivation capability bound to one chain's master public key."""

    def __init__(self, xpub: str, family: ChainFamily = ChainFamily.ACCOUNT) -> None:
        self.xpub = xpub
        self.family = family

    def derive(self, index: int) -> str:
        return derive_address(self.xpub, index, self.family)
