"""Tests for the adapter factory and platform catalogue."""

import pytest

from src.core.brokers.angel_one import AngelOnePlatform
from src.core.brokers.dhan import DhanPlatform
from src.core.brokers.errors import PlatformError, UnsupportedPlatform
from src.core.brokers.factory import (
    create_platform,
    get_platform_fields,
    get_supported_platforms,
    resolve_platform,
)
from src.core.brokers.models import Deadline, PlatformCredentials, PlatformId
from src.core.brokers.stubs import FivePaisaPlatform, GrowwPlatform
from src.core.brokers.upstox import UpstoxPlatform
from src.core.brokers.zerodha import ZerodhaPlatform


def credentials(platform=PlatformId.DHAN):
    return PlatformCredentials(platform=platform, access_token="token")


class TestCreatePlatform:
    """Tests for create_platform."""

    @pytest.mark.parametrize("identifier,adapter_class", [
        ("DHAN", DhanPlatform),
        ("UPSTOX", UpstoxPlatform),
        ("ZERODHA", ZerodhaPlatform),
        ("ANGEL_ONE", AngelOnePlatform),
        ("GROWW", GrowwPlatform),
        ("5PAISA", FivePaisaPlatform),
        (PlatformId.DHAN, DhanPlatform),
    ])
    def test_builds_adapter(self, http, identifier, adapter_class):
        """Should return the adapter registered for the platform."""
        adapter = create_platform(identifier, credentials(), http=http)

        assert isinstance(adapter, adapter_class)

    @pytest.mark.parametrize("identifier", ["dhan", "angel-one", " Angel_One ", "upstox"])
    def test_normalizes_identifier(self, identifier):
        """Should accept lower case and hyphenated identifiers."""
        assert resolve_platform(identifier) in set(PlatformId)

    @pytest.mark.parametrize("identifier", ["ROBINHOOD", "", None])
    def test_unknown_platform(self, identifier):
        """Should raise UnsupportedPlatform for unknown identifiers."""
        with pytest.raises(UnsupportedPlatform) as exc_info:
            create_platform(identifier, credentials())

        assert isinstance(exc_info.value, PlatformError)

    def test_performs_no_io(self, http):
        """Should not send any request while building an adapter."""
        for platform in PlatformId:
            create_platform(platform, credentials(platform), http=http)

        assert http.method_calls == []

    def test_passes_options(self, http):
        """Should hand timeout, deadline and session to the adapter."""
        deadline = Deadline(seconds=30)

        adapter = create_platform("DHAN", credentials(), timeout=5.0, deadline=deadline, http=http)

        assert adapter.timeout == 5.0
        assert adapter.deadline is deadline
        assert adapter.http is http


class TestCatalogue:
    """Tests for platform listing."""

    def test_lists_every_platform(self):
        """Should list all nine platforms with label and connection type."""
        platforms = get_supported_platforms()

        assert len(platforms) == 9
        assert {p["value"] for p in platforms} == {p.value for p in PlatformId}
        by_value = {p["value"]: p for p in platforms}
        assert by_value["DHAN"]["connection"] == "oauth"
        assert by_value["ANGEL_ONE"]["connection"] == "credentials"
        assert by_value["GROWW"]["connection"] == "unavailable"
        assert by_value["ICICI_DIRECT"]["label"] == "ICICI Direct"

    def test_angel_one_fields(self):
        """Should ask for key, client code, PIN and TOTP."""
        fields = {f.name: f for f in get_platform_fields("angel_one")}

        assert list(fields) == ["api_key", "clientcode", "api_secret", "totp", "state"]
        assert fields["api_secret"].type == "password"
        assert not fields["state"].required

    def test_oauth_platforms_need_no_fields(self):
        """Should return no manual fields for OAuth platforms."""
        assert get_platform_fields("DHAN") == []
