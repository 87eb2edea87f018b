from __future__ import annotations

from ledgersync.core.errors import ProviderConfigError
from ledgersync.providers.accounting.base import AccountingProvider
from ledgersync.providers.accounting.fake import FakeAccountingProvider
from ledgersync.providers.accounting.quickbooks import QuickBooksProvider
from ledgersync.providers.accounting.xero import XeroProvider


SUPPORTED_PROVIDERS = ("xero", "quickbooks", "fake")

_overrides: dict[str, AccountingProvider] = {}


def get_accounting_provider(name: str) -> AccountingProvider:
    # Resolve the adapter from the connection's variant tag.
    provider = (name or "").lower()
    if provider in _overrides:
        return _overrides[provider]
    if provider == "xero":
        return XeroProvider()
    if provider == "quickbooks":
        return QuickBooksProvider()
    if provider == "fake":
        return FakeAccountingProvider()
    raise ProviderConfigError(f"unsupported accounting provider: {name}")


def override_accounting_provider(name: str, provider: AccountingProvider) -> None:
    # Pin an adapter instance, e.g. a shared fake in tests or local demos.
    _overrides[name.lower()] = provider


def clear_provider_overrides() -> None:
    _overrides.clear()
