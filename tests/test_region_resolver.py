"""
Tests for pricing region resolution.
"""
import httpx

from resumekit.services import region_resolver
from resumekit.services.region_resolver import (
    RegionResolver,
    SOURCE_BILLING_ADDRESS,
    SOURCE_DEFAULT,
    SOURCE_IP_GEOLOCATION,
    geolocate_ip,
    resolve_region,
)
from conftest import add_billing_country


def test_billing_address_wins_over_ip(db_session, test_user):
    """Test the billing country outranks IP geolocation."""
    add_billing_country(db_session, test_user, "IN")
    calls = []

    def geolocate(ip):
        calls.append(ip)
        return "US"

    resolved = RegionResolver(db_session, geolocate=geolocate).resolve(test_user.id, "8.8.8.8")

    assert resolved.as_dict() == {"region": "INDIA", "currency": "INR", "source": SOURCE_BILLING_ADDRESS}
    assert calls == []


def test_ip_used_without_billing_address(db_session, test_user):
    """Test IP geolocation applies when no billing address exists."""
    resolved = RegionResolver(db_session, geolocate=lambda ip: "IN").resolve(test_user.id, "49.36.0.1")
    assert (resolved.region, resolved.currency, resolved.source) == ("INDIA", "INR", SOURCE_IP_GEOLOCATION)


def test_non_indian_ip_is_global(db_session, test_user):
    """Test any other country prices in USD."""
    resolved = RegionResolver(db_session, geolocate=lambda ip: "DE").resolve(test_user.id, "5.1.1.1")
    assert (resolved.region, resolved.currency, resolved.source) == ("GLOBAL", "USD", SOURCE_IP_GEOLOCATION)


def test_geolocation_failure_degrades_to_default(db_session, test_user):
    """Test a crashing lookup never reaches the caller."""
    def broken(ip):
        raise RuntimeError("geo service exploded")

    resolved = RegionResolver(db_session, geolocate=broken).resolve(test_user.id, "8.8.8.8")
    assert (resolved.region, resolved.currency, resolved.source) == ("GLOBAL", "USD", SOURCE_DEFAULT)


def test_no_inputs_is_default(db_session):
    """Test an anonymous request without IP gets GLOBAL/USD."""
    resolved = RegionResolver(db_session, geolocate=lambda ip: "IN").resolve(None, None)
    assert resolved.source == SOURCE_DEFAULT


def test_resolve_region_precedence():
    """Test the pure precedence rules."""
    assert resolve_region("US", "IN").source == SOURCE_BILLING_ADDRESS
    assert resolve_region("US", "IN").region == "GLOBAL"
    assert resolve_region(None, "IN").region == "INDIA"
    assert resolve_region(None, None).source == SOURCE_DEFAULT


def test_geolocate_skips_private_addresses(monkeypatch):
    """Test private and malformed addresses never hit the network."""
    def fail(*args, **kwargs):
        raise AssertionError("network must not be called")

    monkeypatch.setattr(region_resolver.httpx, "get", fail)
    assert geolocate_ip("10.0.0.4") is None
    assert geolocate_ip("127.0.0.1") is None
    assert geolocate_ip("not-an-ip") is None


def test_geolocate_http_error_returns_none(monkeypatch):
    """Test network failures degrade to None."""
    def timeout(*args, **kwargs):
        raise httpx.ConnectTimeout("timed out")

    monkeypatch.setattr(region_resolver.httpx, "get", timeout)
    assert geolocate_ip("8.8.8.8") is None


def test_geolocate_parses_country(monkeypatch):
    """Test a two-letter body is returned upper-cased."""
    def respond(url, timeout):
        return httpx.Response(200, text="in\n", request=httpx.Request("GET", url))

    monkeypatch.setattr(region_resolver.httpx, "get", respond)
    assert geolocate_ip("49.36.0.1") == "IN"


def test_geolocate_rejects_garbage(monkeypatch):
    """Test an unusable body is treated as unknown."""
    def respond(url, timeout):
        return httpx.Response(200, text="Undefined", request=httpx.Request("GET", url))

    monkeypatch.setattr(region_resolver.httpx, "get", respond)
    assert geolocate_ip("49.36.0.1") is None
