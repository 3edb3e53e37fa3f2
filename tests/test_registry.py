"""Tests for the provider client registry."""

import pytest

import ratefeed.providers  # noqa: F401
from ratefeed.core.registry import ProviderRegistry, list_providers
from ratefeed.core.schema import ProviderCode
from ratefeed.providers import (
    DrivaliaClient,
    FleetMarqueClient,
    LexClient,
    OgilvieClient,
    OgilvieRatebookParser,
    VenusRatebookParser,
    get_ratebook_parser,
)


class TestRegistry:

    def test_portal_clients_registered(self):
        assert set(list_providers()) >= {"lex", "ogilvie", "drivalia", "fleet_marque"}
        assert ProviderRegistry.get_client_class(ProviderCode.LEX) is LexClient
        assert ProviderRegistry.get_client_class(ProviderCode.DRIVALIA) is DrivaliaClient

    def test_lookup_by_name(self):
        assert ProviderRegistry.get_client_class("Ogilvie") is OgilvieClient
        assert ProviderRegistry.get_client_class("fleet-marque") is FleetMarqueClient

    def test_venus_has_no_client(self):
        assert not ProviderRegistry.is_registered(ProviderCode.VENUS)

    def test_unknown_provider(self):
        assert ProviderRegistry.get_client_class("trabant") is None
        with pytest.raises(ValueError):
            ProviderRegistry.get_client("trabant")

    def test_only_clients_register(self):
        with pytest.raises(TypeError):
            ProviderRegistry.register(ProviderCode.VENUS, dict)


class TestRatebookParsers:

    def test_lookup(self):
        assert isinstance(get_ratebook_parser("venus"), VenusRatebookParser)
        assert isinstance(get_ratebook_parser(ProviderCode.OGILVIE), OgilvieRatebookParser)

    def test_provider_without_ratebook(self):
        with pytest.raises(ValueError):
            get_ratebook_parser("fleet_marque")
