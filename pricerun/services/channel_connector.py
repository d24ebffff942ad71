from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from pricerun.core.errors import ChannelError, FatalChannelError


@dataclass(frozen=True)
class ChannelResult:
    success: bool
    error: ChannelError | None = None


@dataclass(frozen=True)
class LivePrice:
    amount: int
    currency: str


class ChannelConnector(Protocol):
    name: str

    def update_price(self, sku_identifier: str, amount: int, currency: str) -> ChannelResult:
        ...

    def get_current_price(self, sku_identifier: str) -> LivePrice:
        ...


class StubChannelConnector:
    """In-memory connector used in dev and tests.

    Failures can be scripted per SKU with ``fail_next``; each scripted error is
    returned once, in order, before calls start succeeding again.
    """

    def __init__(self, name: str, *, prices: dict[str, LivePrice] | None = None):
        self.name = name
        self.prices: dict[str, LivePrice] = dict(prices or {})
        self.calls: list[tuple[str, int, str]] = []
        self._failures: dict[str, list[ChannelError]] = defaultdict(list)
        self._lock = Lock()

    def fail_next(self, sku_identifier: str, error: ChannelError, *, times: int = 1) -> None:
        with self._lock:
            self._failures[sku_identifier].extend([error] * times)

    def set_live_price(self, sku_identifier: str, amount: int, currency: str) -> None:
        with self._lock:
            self.prices[sku_identifier] = LivePrice(amount=amount, currency=currency)

    def update_price(self, sku_identifier: str, amount: int, currency: str) -> ChannelResult:
        with self._lock:
            self.calls.append((sku_identifier, amount, currency))
            scripted = self._failures.get(sku_identifier)
            if scripted:
                return ChannelResult(success=False, error=scripted.pop(0))
            self.prices[sku_identifier] = LivePrice(amount=amount, currency=currency)
            return ChannelResult(success=True)

    def get_current_price(self, sku_identifier: str) -> LivePrice:
        with self._lock:
            price = self.prices.get(sku_identifier)
        if price is None:
            raise FatalChannelError(f"SKU {sku_identifier} not found on {self.name}", status_code=404, code="NOT_FOUND")
        return price


class ChannelRegistry:
    def __init__(self, connectors: dict[str, ChannelConnector] | None = None):
        self._connectors: dict[str, ChannelConnector] = {}
        for name, connector in (connectors or {}).items():
            self.register(name, connector)

    def register(self, name: str, connector: ChannelConnector) -> None:
        self._connectors[name.strip().lower()] = connector

    def get(self, name: str) -> ChannelConnector:
        normalized = (name or "").strip().lower()
        connector = self._connectors.get(normalized)
        if not connector:
            available = ", ".join(sorted(self._connectors))
            raise FatalChannelError(
                f"Unknown channel '{name}'. Available: {available}",
                code="UNKNOWN_CHANNEL",
            )
        return connector

    def names(self) -> list[str]:
        return sorted(self._connectors)


def build_channel_registry() -> ChannelRegistry:
    return ChannelRegistry(
        {
            "shopify": StubChannelConnector("shopify"),
            "amazon": StubChannelConnector("amazon"),
        }
    )
