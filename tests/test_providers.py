"""Unit tests for CloudflareDNSProvider and NginxProxyManagerProvider."""

from typing import Any, List, Optional
from unittest.mock import MagicMock, patch

import pytest
import requests

from homelab_proxy.providers import (
    AuthenticationError,
    CloudflareDNSProvider,
    ManagedRecord,
    NginxProxyManagerProvider,
    ProviderError,
    RecordNotFoundError,
)

CF_URL = "https://api.cloudflare.com/client/v4"
NPM_URL = "http://npm.local:81"

# =============================================================================
# Test Helpers
# =============================================================================


def cf_response(
    result: Any = None, success: bool = True, errors: Optional[List[dict]] = None, status: int = 200
) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.json.return_value = {"success": success, "errors": errors or [], "result": result}
    return response


def npm_response(body: Any = None, status: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.content = b"x" if body is not None else b""
    response.json.return_value = body
    if status >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(
            f"{status} Error", response=response
        )
    else:
        response.raise_for_status = MagicMock()
    return response


def make_cloudflare() -> CloudflareDNSProvider:
    return CloudflareDNSProvider(api_token="token", domains=["example.com"])


def make_npm() -> NginxProxyManagerProvider:
    provider = NginxProxyManagerProvider(url=NPM_URL, email="admin@example.com", password="secret")
    provider._token = "jwt"
    return provider


ZONE = cf_response([{"id": "zone1", "name": "example.com"}])


# =============================================================================
# Cloudflare
# =============================================================================


class TestCloudflareConnection:
    """Tests for Cloudflare token verification."""

    def test_test_connection_success(self) -> None:
        provider = make_cloudflare()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = cf_response({"status": "active"})

            assert provider.test_connection() is True
            mock_request.assert_called_once_with(
                "GET", f"{CF_URL}/user/tokens/verify", timeout=10.0
            )

    def test_test_connection_network_failure(self) -> None:
        provider = make_cloudflare()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.ConnectionError("Connection refused")

            assert provider.test_connection() is False

    def test_rejected_token_raises_authentication_error(self) -> None:
        provider = make_cloudflare()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = cf_response(success=False, status=403)

            with pytest.raises(AuthenticationError):
                provider.list_records()

    def test_bearer_header_is_set(self) -> None:
        assert make_cloudflare()._session.headers["Authorization"] == "Bearer token"


class TestCloudflareRecords:
    """Tests for listing, creating and deleting Cloudflare records."""

    def test_list_records(self) -> None:
        provider = make_cloudflare()
        records = cf_response(
            [
                {"id": "r1", "name": "app.example.com", "type": "CNAME", "content": "example.com"},
                {"id": "r2", "name": "example.com", "type": "A", "content": "203.0.113.10", "proxied": True},
            ]
        )

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [ZONE, records]

            result = provider.list_records()

            assert result == [
                ManagedRecord("app.example.com", "CNAME", "example.com", "example.com", "r1", False),
                ManagedRecord("example.com", "A", "203.0.113.10", "example.com", "r2", True),
            ]
            assert mock_request.call_args_list[0].kwargs["params"] == {"name": "example.com"}
            assert mock_request.call_args_list[1].args == ("GET", f"{CF_URL}/zones/zone1/dns_records")

    def test_zone_id_is_cached(self) -> None:
        provider = make_cloudflare()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [ZONE, cf_response([]), cf_response([])]

            provider.list_records()
            provider.list_records()

            assert mock_request.call_count == 3

    def test_unknown_zone(self) -> None:
        provider = make_cloudflare()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = cf_response([])

            with pytest.raises(RecordNotFoundError):
                provider.list_records("missing.com")

    def test_create_cname_points_at_apex(self) -> None:
        provider = make_cloudflare()
        apex = cf_response([{"id": "a1", "name": "example.com", "type": "A", "content": "203.0.113.10"}])
        created = cf_response({"id": "r9", "name": "app.example.com", "type": "CNAME", "content": "example.com"})

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [ZONE, apex, created]

            record = provider.create_cname_record("app", "example.com")

            assert record.name == "app.example.com"
            assert record.type == "CNAME"
            assert mock_request.call_args.kwargs["json"] == {
                "type": "CNAME",
                "name": "app.example.com",
                "content": "example.com",
                "ttl": 1,
                "proxied": False,
            }

    def test_create_cname_requires_apex_a_record(self) -> None:
        provider = make_cloudflare()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [ZONE, cf_response([])]

            with pytest.raises(ProviderError, match="No A record found"):
                provider.create_cname_record("app", "example.com")

    def test_create_existing_record_returns_it(self) -> None:
        provider = make_cloudflare()
        exists = cf_response(success=False, errors=[{"code": 81057, "message": "Record already exists."}])
        existing = cf_response([{"id": "r1", "name": "app.example.com", "type": "A", "content": "10.0.0.5"}])

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [ZONE, exists, existing]

            record = provider.create_a_record("app", "example.com", "10.0.0.5")

            assert record.id == "r1"

    def test_api_error_keeps_codes(self) -> None:
        provider = make_cloudflare()
        failure = cf_response(success=False, errors=[{"code": 9005, "message": "Content for A record is invalid."}])

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [ZONE, failure]

            with pytest.raises(ProviderError) as excinfo:
                provider.create_a_record("app", "example.com", "nope")

            assert excinfo.value.codes == [9005]
            assert "Content for A record is invalid." in str(excinfo.value)

    def test_delete_record(self) -> None:
        provider = make_cloudflare()
        found = cf_response([{"id": "r1", "name": "app.example.com", "type": "CNAME", "content": "example.com"}])

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [ZONE, found, cf_response({"id": "r1"})]

            provider.delete_record("app", "example.com")

            mock_request.assert_called_with("DELETE", f"{CF_URL}/zones/zone1/dns_records/r1", timeout=10.0)

    def test_delete_missing_record(self) -> None:
        provider = make_cloudflare()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [ZONE, cf_response([])]

            with pytest.raises(RecordNotFoundError):
                provider.delete_record("gone", "example.com")


class TestTtlParsing:
    @pytest.mark.parametrize(
        "ttl,expected",
        [("auto", 1), ("AUTO", 1), (None, 1), (1, 1), (3600, 3600), ("120", 120), ("soon", 300)],
    )
    def test_ttl(self, ttl: Any, expected: int) -> None:
        assert CloudflareDNSProvider(api_token="t", ttl=ttl)._ttl == expected


# =============================================================================
# Nginx Proxy Manager
# =============================================================================


class TestNpmAuthentication:
    """Tests for NPM token login."""

    def test_authenticate_sets_bearer(self) -> None:
        provider = NginxProxyManagerProvider(url=NPM_URL, email="admin@example.com", password="secret")

        with patch.object(provider._session, "post") as mock_post:
            mock_post.return_value = npm_response({"token": "jwt123"})

            assert provider.test_connection() is True
            mock_post.assert_called_once_with(
                f"{NPM_URL}/api/tokens",
                json={"identity": "admin@example.com", "secret": "secret"},
                timeout=10.0,
            )
            assert provider._session.headers["Authorization"] == "Bearer jwt123"

    def test_bad_credentials(self) -> None:
        provider = NginxProxyManagerProvider(url=NPM_URL, email="admin@example.com", password="wrong")

        with patch.object(provider._session, "post") as mock_post:
            mock_post.return_value = npm_response({"error": {"message": "Invalid password"}}, status=401)

            assert provider.test_connection() is False
            with pytest.raises(AuthenticationError):
                provider.authenticate()

    def test_requests_authenticate_first(self) -> None:
        provider = NginxProxyManagerProvider(url=NPM_URL, email="admin@example.com", password="secret")

        with patch.object(provider._session, "post") as mock_post, patch.object(
            provider._session, "request"
        ) as mock_request:
            mock_post.return_value = npm_response({"token": "jwt123"})
            mock_request.return_value = npm_response([])

            provider.list_proxy_hosts()

            mock_post.assert_called_once()


class TestNpmProxyHosts:
    """Tests for listing, creating and deleting proxy hosts."""

    def test_list_proxy_hosts(self) -> None:
        provider = make_npm()
        body = [
            {
                "id": 7,
                "domain_names": ["app.example.com"],
                "forward_host": "192.168.1.20",
                "forward_port": 8080,
                "certificate_id": 3,
                "enabled": True,
                "created_on": "2024-01-01",
                "modified_on": "2024-02-01",
            }
        ]

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = npm_response(body)

            hosts = provider.list_proxy_hosts()

            assert len(hosts) == 1
            assert hosts[0].id == 7
            assert hosts[0].domains == ["app.example.com"]
            assert hosts[0].target == "192.168.1.20:8080"
            assert hosts[0].ssl is True
            mock_request.assert_called_once_with("GET", f"{NPM_URL}/api/nginx/proxy-hosts", timeout=10.0)

    def test_list_rejects_unexpected_format(self) -> None:
        provider = make_npm()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = npm_response({"not": "a list"})

            with pytest.raises(ProviderError, match="expected list"):
                provider.list_proxy_hosts()

    def test_create_proxy_host_payload(self) -> None:
        provider = make_npm()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = npm_response(
                {"id": 9, "domain_names": ["app.example.com"], "forward_host": "10.0.0.5", "forward_port": 3000}
            )

            host = provider.create_proxy_host("app", "example.com", "10.0.0.5:3000")

            payload = mock_request.call_args.kwargs["json"]
            assert payload["domain_names"] == ["app.example.com"]
            assert payload["forward_host"] == "10.0.0.5"
            assert payload["forward_port"] == 3000
            assert payload["allow_websocket_upgrade"] is True
            assert payload["certificate_id"] == 0
            assert payload["ssl_forced"] is False
            assert host.id == 9

    def test_force_ssl_needs_certificate(self) -> None:
        provider = make_npm()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = npm_response({"id": 9})

            provider.create_proxy_host("app", "example.com", "10.0.0.5:3000", force_ssl=True, certificate_id=4)

            payload = mock_request.call_args.kwargs["json"]
            assert payload["ssl_forced"] is True
            assert payload["certificate_id"] == 4

    def test_create_existing_proxy_host_returns_it(self) -> None:
        provider = make_npm()
        conflict = npm_response({"error": {"message": "app.example.com is already in use"}}, status=400)
        listing = npm_response([{"id": 3, "domain_names": ["app.example.com"]}])

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [conflict, listing]

            host = provider.create_proxy_host("app", "example.com", "10.0.0.5:3000")

            assert host.id == 3

    def test_delete_proxy_host(self) -> None:
        provider = make_npm()
        listing = npm_response([{"id": 3, "domain_names": ["app.example.com"]}])

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [listing, npm_response(None)]

            provider.delete_proxy_host("app", "example.com")

            mock_request.assert_called_with("DELETE", f"{NPM_URL}/api/nginx/proxy-hosts/3", timeout=10.0)

    def test_delete_missing_proxy_host(self) -> None:
        provider = make_npm()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = npm_response([])

            with pytest.raises(RecordNotFoundError):
                provider.delete_proxy_host("gone", "example.com")

    def test_server_error_message_is_surfaced(self) -> None:
        provider = make_npm()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = npm_response({"error": {"message": "Internal Error"}}, status=500)

            with pytest.raises(ProviderError, match="Internal Error"):
                provider.list_proxy_hosts()


class TestSplitName:
    def test_uses_listed_domain(self) -> None:
        record = ManagedRecord("app.lab.example.com", "CNAME", "example.com", domain="example.com")

        assert record.split_name() == ("app.lab", "example.com")

    def test_falls_back_to_first_label(self) -> None:
        assert ManagedRecord("app.example.com", "CNAME", "x").split_name() == ("app", "example.com")
