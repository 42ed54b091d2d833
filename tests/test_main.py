"""
Tests for service wiring, startup and graceful shutdown.

Run with: pytest tests/test_main.py -v
"""

import pytest

from config import config
from exceptions import ConfigurationError
from main import PaymentNetworkService


class TestPaymentNetworkService:
    """Tests for PaymentNetworkService."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        """Test every component starts and shuts down in order."""
        service = PaymentNetworkService(database_url='sqlite:///:memory:')

        await service.start()
        try:
            assert service.accepting_requests
            assert service.db.is_connected
            assert service.dispatcher.is_running
            assert service.expiry_monitor.is_running

            stats = service.get_stats()
            assert stats['accepting_requests']
            assert stats['engine']['authorizations'] == 0
        finally:
            await service.stop()

        assert not service.accepting_requests
        assert not service.dispatcher.is_running
        assert not service.expiry_monitor.is_running
        assert not service.db.is_connected

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        service = PaymentNetworkService(database_url='sqlite:///:memory:')
        await service.start()

        await service.stop()
        await service.stop()

        assert not service.accepting_requests

    @pytest.mark.asyncio
    async def test_registers_endpoints_in_database(self):
        """Test admin operations persist through the SQL stores."""
        service = PaymentNetworkService(database_url='sqlite:///:memory:')
        await service.start()
        try:
            endpoint = await service.dispatcher.register_endpoint(
                'merchant-1', 'https://shop.example/hooks', ['payment.captured']
            )
            stored = await service.dispatcher.get_endpoint(endpoint.id)
            assert stored.secret == endpoint.secret
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_invalid_configuration(self, monkeypatch):
        """Test startup refuses to run with invalid configuration."""
        monkeypatch.setattr(config.payment, 'authorization_expiry_hours', 0)
        service = PaymentNetworkService(database_url='sqlite:///:memory:')

        with pytest.raises(ConfigurationError) as exc_info:
            await service.start()

        assert "AUTH_EXPIRY_HOURS must be positive" in exc_info.value.details['errors']
        assert service.db is None

    @pytest.mark.asyncio
    async def test_malformed_provider_list(self, monkeypatch):
        """Test a provider list that failed to parse stops startup."""
        monkeypatch.setattr(config, 'provider_errors', ["ISSUER_PROVIDERS must be a JSON list"])
        service = PaymentNetworkService(database_url='sqlite:///:memory:')

        with pytest.raises(ConfigurationError) as exc_info:
            await service.start()

        assert "ISSUER_PROVIDERS must be a JSON list" in exc_info.value.details['errors']
        assert service.db is None
