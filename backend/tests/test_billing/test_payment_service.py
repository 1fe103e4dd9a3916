"""Tests for the payment adapter factory and its FastAPI dependency."""

from types import SimpleNamespace

import pytest

from paybridge.billing.exceptions import ConfigurationError
from paybridge.billing.lemonsqueezy_adapter import LemonSqueezyAdapter
from paybridge.billing.polar_adapter import PolarAdapter
from paybridge.billing.service import (
    create_payment_adapter,
    get_payment_adapter,
    is_payment_system_configured,
)
from paybridge.billing.stripe_adapter import StripeAdapter


class TestCreatePaymentAdapter:
    @pytest.mark.parametrize(
        ("provider", "adapter_cls"),
        [("stripe", StripeAdapter), ("polar", PolarAdapter), ("lemonsqueezy", LemonSqueezyAdapter)],
    )
    def test_builds_configured_provider(self, billing_settings, plan_catalog, provider, adapter_cls):
        cfg = billing_settings.model_copy(update={"payment_provider": provider})
        adapter = create_payment_adapter(cfg, plan_catalog)
        assert isinstance(adapter, adapter_cls)
        assert adapter.provider == provider

    def test_missing_secret_raises(self, billing_settings):
        cfg = billing_settings.model_copy(update={"payment_provider": "polar", "polar_access_token": ""})
        with pytest.raises(ConfigurationError, match="POLAR_ACCESS_TOKEN"):
            create_payment_adapter(cfg)

    def test_unknown_provider_raises(self, billing_settings):
        cfg = billing_settings.model_copy(update={"payment_provider": "paddle"})
        with pytest.raises(ConfigurationError, match="Unsupported payment provider: paddle"):
            create_payment_adapter(cfg)


class TestIsPaymentSystemConfigured:
    def test_configured(self, billing_settings):
        assert is_payment_system_configured(billing_settings) is True

    def test_not_configured(self, billing_settings):
        cfg = billing_settings.model_copy(update={"stripe_webhook_secret": ""})
        assert is_payment_system_configured(cfg) is False


class TestGetPaymentAdapter:
    def _request(self):
        return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))

    def test_adapter_is_cached_on_app_state(self, billing_settings, monkeypatch):
        monkeypatch.setattr("paybridge.billing.service.settings", billing_settings)
        request = self._request()

        first = get_payment_adapter(request)
        second = get_payment_adapter(request)

        assert isinstance(first, StripeAdapter)
        assert first is second
        assert request.app.state.payment_adapter is first

    def test_existing_adapter_is_returned(self):
        request = self._request()
        sentinel = object()
        request.app.state.payment_adapter = sentinel
        assert get_payment_adapter(request) is sentinel

    def test_unconfigured_provider_propagates(self, billing_settings, monkeypatch):
        monkeypatch.setattr(
            "paybridge.billing.service.settings",
            billing_settings.model_copy(update={"stripe_secret_key": ""}),
        )
        with pytest.raises(ConfigurationError):
            get_payment_adapter(self._request())
