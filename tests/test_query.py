"""Tests for the Metrics Query Service client."""

import httpx
import pytest

from perfgate.query import API_KEY_ENV, MetricsQueryClient, QueryError


def _client(handler, **kwargs):
    return MetricsQueryClient("http://metrics.test", transport=httpx.MockTransport(handler), **kwargs)


class TestQuery:
    def test_scalar(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"value": 412.0})

        with _client(handler, api_key="secret") as client:
            payload = client.query("avg_duration", "checkout", 3600)

        assert payload == {"value": 412.0}
        request = seen[0]
        assert request.url.path == "/query"
        assert request.url.params["metric"] == "avg_duration"
        assert request.url.params["target"] == "checkout"
        assert request.url.params["since"] == "3600"
        assert "facet" not in request.url.params
        assert request.headers["X-Api-Key"] == "secret"

    def test_facet_param(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"facets": []})

        with _client(handler) as client:
            client.query("avg_duration", "checkout", 604800, facet="name")
        assert seen[0].url.params["facet"] == "name"

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv(API_KEY_ENV, "from-env")
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"value": 1})

        with _client(handler) as client:
            client.query("requests", "checkout", 60)
        assert seen[0].headers["X-Api-Key"] == "from-env"

    def test_http_error(self):
        with _client(lambda request: httpx.Response(503)) as client:
            with pytest.raises(QueryError, match="503"):
                client.query("avg_duration", "checkout", 3600)

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with _client(handler) as client:
            with pytest.raises(QueryError, match="failed"):
                client.query("avg_duration", "checkout", 3600)

    def test_non_json_body(self):
        with _client(lambda request: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(QueryError, match="non-JSON"):
                client.query("avg_duration", "checkout", 3600)
