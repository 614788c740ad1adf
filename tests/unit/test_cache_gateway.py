# =============================================================================
# tests/unit/test_cache_gateway.py
# Unit Tests for CacheGateway
# =============================================================================

import json

import pytest
import requests

from ontime_core.offline.cache_gateway import (
    CACHE_HEADER,
    CacheGateway,
    RequestClass,
    is_offline_response,
)

ORIGIN = "http://ontime.test"


class TestClassification:
    """Requests are classified by method, origin and path"""

    @pytest.mark.parametrize("path, expected", [
        ("/", RequestClass.STATIC),
        ("/manifest.json", RequestClass.STATIC),
        ("/icons/icon-192x192.svg", RequestClass.STATIC),
        ("/api/tasks?status=pending", RequestClass.API),
        ("/tasks/123", RequestClass.OTHER),
    ])
    def test_same_origin_get(self, gateway, path, expected):
        assert gateway.classify("GET", ORIGIN + path) is expected

    def test_non_get_passes_through(self, gateway):
        assert gateway.classify("POST", ORIGIN + "/api/tasks") is RequestClass.PASSTHROUGH

    def test_cross_origin_passes_through(self, gateway):
        assert gateway.classify("GET", "https://cdn.example.com/") is RequestClass.PASSTHROUGH

    def test_port_is_part_of_origin(self, store):
        local = CacheGateway(store, origin="http://localhost:3000")

        assert local.classify("GET", "http://localhost:3000/") is RequestClass.STATIC
        assert local.classify("GET", "http://localhost:3001/") is RequestClass.PASSTHROUGH


class TestStaticCacheFirst:

    def test_cached_copy_served_without_network(self, session, network):
        network.add(ORIGIN + "/manifest.json", b'{"name": "OnTime"}')
        session.get(ORIGIN + "/manifest.json")
        network.sent.clear()

        response = session.get(ORIGIN + "/manifest.json")

        assert response.status_code == 200
        assert response.json() == {"name": "OnTime"}
        assert response.headers[CACHE_HEADER] == "hit"
        assert network.sent == []

    def test_offline_and_uncached_gives_503(self, session, network):
        network.offline = True

        response = session.get(ORIGIN + "/icons/icon-512x512.svg")

        assert response.status_code == 503
        assert is_offline_response(response)
        assert response.json()["error"] == "offline"


class TestApiNetworkFirst:

    def test_success_is_cached_and_used_offline(self, session, network, gateway, store):
        url = ORIGIN + "/api/tasks?page=1"
        network.add(url, b'[{"id": "t1"}]', headers={"Content-Type": "application/json"})

        assert session.get(url).json() == [{"id": "t1"}]
        assert store.match_response(url, [gateway.dynamic_bucket]) is not None

        network.offline = True
        response = session.get(url)

        assert response.status_code == 200
        assert response.json() == [{"id": "t1"}]
        assert not is_offline_response(response)

    def test_network_preferred_over_cache(self, session, network):
        url = ORIGIN + "/api/tasks"
        network.add(url, b"v1")
        session.get(url)
        network.add(url, b"v2")

        assert session.get(url).content == b"v2"

    def test_error_responses_are_not_cached(self, session, network, store):
        url = ORIGIN + "/api/tasks"
        network.add(url, b"server exploded", status=500)

        assert session.get(url).status_code == 500
        assert store.match_response(url) is None

        network.offline = True
        assert is_offline_response(session.get(url))

    def test_api_miss_does_not_fall_back_to_shell(self, session, network):
        network.add(ORIGIN + "/", b"<html>shell</html>")
        session.get(ORIGIN + "/")
        network.offline = True

        response = session.get(ORIGIN + "/api/unknown")

        assert response.status_code == 503


class TestOtherRequests:

    def test_falls_back_to_shell_page(self, session, network):
        network.add(ORIGIN + "/", b"<html>shell</html>", headers={"Content-Type": "text/html"})
        session.get(ORIGIN + "/")
        network.offline = True

        response = session.get(ORIGIN + "/tasks/abc")

        assert response.status_code == 200
        assert response.text == "<html>shell</html>"

    def test_exact_copy_preferred_over_shell(self, session, network):
        network.add(ORIGIN + "/", b"shell")
        network.add(ORIGIN + "/tasks/abc", b"task page")
        session.get(ORIGIN + "/")
        session.get(ORIGIN + "/tasks/abc")
        network.offline = True

        assert session.get(ORIGIN + "/tasks/abc").content == b"task page"

    def test_nothing_cached_gives_503(self, session, network):
        network.offline = True

        assert is_offline_response(session.get(ORIGIN + "/tasks/abc"))


class TestPassthrough:

    def test_post_is_never_cached(self, session, network, store):
        url = ORIGIN + "/api/tasks"
        network.add(url, b"created", status=201)

        response = session.post(url, data=b"{}")

        assert response.status_code == 201
        assert store.list_buckets() == []
        assert network.sent == ["POST " + url]

    def test_post_offline_raises(self, session, network):
        network.offline = True

        with pytest.raises(requests.exceptions.ConnectionError):
            session.post(ORIGIN + "/api/tasks", data=b"{}")


class TestLifecycle:

    def test_install_precaches_static_paths(self, gateway, network, store):
        for path in gateway.static_paths:
            network.add(ORIGIN + path, path.encode())

        result = gateway.install()

        assert result.success
        assert result.data["failed"] == []
        assert len(result.data["cached"]) == len(gateway.static_paths)
        assert store.match_response(ORIGIN + "/", [gateway.static_bucket]).body == b"/"

    def test_install_reports_failures_without_aborting(self, gateway, network):
        network.add(ORIGIN + "/", b"shell")

        result = gateway.install()

        assert result.success
        assert result.data["cached"] == ["/"]
        assert "/manifest.json" in result.data["failed"]

    def test_install_with_nothing_reachable_fails(self, gateway, network):
        network.offline = True

        result = gateway.install()

        assert not result.success
        assert result.error_code == "CACHE_001"

    def test_version_bump_purges_old_buckets(self, store, network):
        network.add(ORIGIN + "/", b"old shell")
        old = CacheGateway(store, origin=ORIGIN, version=1, network=network)
        old.install()
        old.activate()

        new = CacheGateway(store, origin=ORIGIN, version=2, network=network)
        network.add(ORIGIN + "/", b"new shell")
        new.install()
        result = new.activate()

        assert result.data == ["ontime-static-v1"]
        assert all(bucket.endswith("-v2") for bucket in store.list_buckets())
        assert store.match_response(ORIGIN + "/", ["ontime-static-v1"]) is None
        assert store.get_setting("cache_version") == 2

    def test_version_names(self, gateway):
        assert gateway.version == "ontime-v2"
        assert gateway.static_bucket == "ontime-static-v2"
        assert gateway.dynamic_bucket == "ontime-dynamic-v2"

    def test_offline_response_body(self, gateway):
        prepared = requests.Request("GET", ORIGIN + "/x").prepare()
        body = json.loads(gateway.offline_response(prepared).content)

        assert body["url"] == ORIGIN + "/x"
