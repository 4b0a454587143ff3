from __future__ import annotations

import importlib.util
import inspect
import pathlib
from dataclasses import dataclass
from types import ModuleType
from typing import Awaitable, Callable, List, Protocol, Union, runtime_checkable

from .mining.errors import ConfigurationError

PLUGIN_FUNC_NAME = "load_wallet"

# Index used for fee recipients, which never belong to the local wallet.
FEE_RECIPIENT_INDEX = -1


@dataclass
class Identity:
    """A mining address and the key material needed to register it."""

    index: int
    address: str
    public_key: str = ""
    registered: bool = False

    @property
    def short(self) -> str:
        return f"{self.address[:12]}…{self.address[-6:]}" if len(self.address) > 20 else self.address


def fee_recipient(address: str) -> Identity:
    return Identity(index=FEE_RECIPIENT_INDEX, address=address, registered=True)


@runtime_checkable
class Wallet(Protocol):
    """
    Contract of the wallet collaborator. Key derivation and signing live
    behind it; the miner only reads identities and asks for signatures.
    """

    async def load(self, credential: str) -> List[Identity]: ...

    async def sign_message(self, index: int, message: str) -> str: ...

    def mark_registered(self, index: int) -> None: ...


WalletFactory = Callable[[], Union[Wallet, Awaitable[Wallet]]]


def _load_module_from_file(path: pathlib.Path) -> ModuleType:
    spec = importlib.util.spec_from_file_location(f"fetcher_wallet_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise ConfigurationError(message=f"cannot import wallet plugin {path}")
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


def load_wallet_factory(module_file_path: Union[str, pathlib.Path]) -> WalletFactory:
    """Load the ``load_wallet()`` factory from a user supplied Python file."""
    path = pathlib.Path(module_file_path)
    if not path.is_file():
        raise ConfigurationError(message=f"wallet plugin not found: {path}")
    mod = _load_module_from_file(path)
    fn = getattr(mod, PLUGIN_FUNC_NAME, None)
    if fn is None or not callable(fn):
        raise ConfigurationError(
            message=f"wallet plugin must define `{PLUGIN_FUNC_NAME}() -> Wallet`",
            context={"path": str(path)},
        )
    if inspect.signature(fn).parameters:
        raise ConfigurationError(
            message=f"`{PLUGIN_FUNC_NAME}` must take no arguments",
            context={"path": str(path)},
        )
    return fn


async def build_wallet(factory: WalletFactory) -> Wallet:
    wallet = factory()
    if inspect.isawaitable(wallet):
        wallet = await wallet
    if not isinstance(wallet, Wallet):
        raise ConfigurationError(message=f"wallet plugin returned {type(wallet).__name__}, not a Wallet")
    return wallet


__all__ = [
    "FEE_RECIPIENT_INDEX",
    "Identity",
    "Wallet",
    "WalletFactory",
    "fee_recipient",
    "load_wallet_factory",
    "build_wallet",
]
