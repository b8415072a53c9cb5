import pytest
from fastapi.testclient import TestClient

from nutrition_search.composer import ResponseComposer
from nutrition_search.config import ServerConfig
from nutrition_search.rate_limiter import RateLimiter
from nutrition_search.resolver import QueryResolver
from nutrition_search.rules import CustomizationRuleEngine, load_rules
from nutrition_search.server import SearchService, create_app

from conftest import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(resolver, clock):
    return SearchService(ServerConfig(), resolver=resolver, rate_limiter=RateLimiter(clock=clock))


@pytest.fixture
def client(service):
    return TestClient(create_app(service=service))


def test_search_returns_camel_case_answer(client, reranker):
    reranker.preferred = ["smoothies_1"]
    response = client.post(
        "/search",
        json={"query": "gladiator", "topK": 5, "category": "smoothies", "size": "large", "addOns": ["Whey Protein"]},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["query"] == "gladiator"
    assert body["category"] == "smoothies"
    assert body["reranked"] is True
    assert body["total"] == 2
    assert body["topRecommendation"]["id"] == "smoothies_1"
    assert body["topFive"][0] == body["topRecommendation"]
    assert body["topRecommendation"]["customization"]["nutrition"]["protein"] == 85.0
    assert body["topRecommendation"]["customization"]["appliedRulesLabel"] == "Gladiator custom scaling rules"
    assert body["aiResponse"] == "Try the Strawberry Blast!"
    assert response.headers["X-RateLimit-Limit"] == "10"
    assert response.headers["X-RateLimit-Remaining"] == "9"


def test_empty_result_has_zero_total(client, store, chat):
    store.rows = []
    response = client.post("/search", json={"query": "durian"})
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 0
    assert body["topFive"] == []
    assert "aiResponse" not in body
    assert chat.calls == []


def test_eleventh_request_gets_429(client):
    headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
    for expected in range(9, -1, -1):
        response = client.post("/search", json={"query": "berries"}, headers=headers)
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == str(expected)

    denied = client.post("/search", json={"query": "berries"}, headers=headers)
    assert denied.status_code == 429
    assert denied.json() == {"error": "Rate limit exceeded. Please try again later.", "retryAfter": 3600}
    assert denied.headers["Retry-After"] == "3600"
    assert denied.headers["X-RateLimit-Limit"] == "10"
    assert denied.headers["X-RateLimit-Remaining"] == "0"

    other = client.post("/search", json={"query": "berries"}, headers={"X-Forwarded-For": "198.51.100.2"})
    assert other.status_code == 200


def test_window_reopens_after_an_hour(client, clock):
    headers = {"X-Forwarded-For": "203.0.113.7"}
    for _ in range(11):
        client.post("/search", json={"query": "berries"}, headers=headers)

    clock.advance(3601)
    response = client.post("/search", json={"query": "berries"}, headers=headers)
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Remaining"] == "9"


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"query": "   "}, "Query is required"),
        ({}, "Query is required"),
        ({"query": "berries", "topK": 0}, "topK must be a positive integer"),
    ],
)
def test_invalid_requests_get_400(client, payload, message):
    response = client.post("/search", json=payload)
    assert response.status_code == 400
    assert response.json() == {"error": message}


def test_unknown_category_gets_400(client):
    response = client.post("/search", json={"query": "berries", "category": "drinks"})
    assert response.status_code == 400
    assert "category must be one of" in response.json()["error"]


def test_malformed_body_gets_400(client):
    response = client.post("/search", json={"query": "berries", "topK": "many"})
    assert response.status_code == 400
    assert "error" in response.json()


def test_upstream_failure_hides_detail(client, reranker):
    reranker.error = RuntimeError("secret rerank detail")
    response = client.post("/search", json={"query": "berries"})
    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}


def test_rejected_add_ons_get_400(embedder, store, reranker, chat, catalog):
    engine = CustomizationRuleEngine(load_rules(), catalog.add_on, add_on_policy="reject")
    resolver = QueryResolver(embedder, store, reranker, ResponseComposer(chat), engine, catalog)
    app = create_app(service=SearchService(ServerConfig(), resolver=resolver))
    reranker.preferred = ["smoothies_0"]
    response = TestClient(app).post(
        "/search",
        json={"query": "strawberry", "addOns": ["Whey Protein", "Banana", "Peanut Butter"]},
    )
    assert response.status_code == 400
    assert "at most 2 add-ons" in response.json()["error"]
    assert embedder.calls == []


def test_injected_limiter_settings_are_used(resolver):
    limiter = RateLimiter(limit=2)
    service = SearchService(ServerConfig(), resolver=resolver, rate_limiter=limiter)
    assert service.rate_limiter is limiter
    client = TestClient(create_app(service=service))
    statuses = [client.post("/search", json={"query": "berries"}).status_code for _ in range(3)]
    assert statuses == [200, 200, 429]


def test_basic_search(client, reranker):
    response = client.post("/search/basic", json={"query": "berries", "topK": 3})
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 3
    assert [doc["id"] for doc in body["documents"]] == ["smoothies_0", "smoothies_1", "smoothie_bowls_0"]
    assert reranker.calls == []


def test_basic_search_requires_query(client):
    response = client.post("/search/basic", json={"query": ""})
    assert response.status_code == 400
    assert response.json() == {"error": "Query is required"}


def test_health_reports_catalog(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["catalog_items"] == 7
    assert body["rule_families"] == ["gladiator"]
    assert body["indexed_records"] == 4


def test_concurrent_startup_builds_one_resolver(monkeypatch, resolver):
    import threading
    import time

    built = []

    def slow_build(config):
        time.sleep(0.05)
        built.append(config)
        return resolver

    monkeypatch.setattr("nutrition_search.server.build_resolver", slow_build)
    service = SearchService(ServerConfig())
    threads = [threading.Thread(target=service.ensure_resolver) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(built) == 1
    assert service.resolver is resolver
