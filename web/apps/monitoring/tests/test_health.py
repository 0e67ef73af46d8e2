import pytest


@pytest.mark.django_db
def test_health_reports_db_and_cache(client):
    r = client.get("/health/")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "components": {"db": {"ok": True}, "cache": {"ok": True}}}


@pytest.mark.django_db
def test_health_is_503_when_the_cache_is_down(client, monkeypatch):
    from apps.monitoring import api

    monkeypatch.setattr(api, "_cache_ok", lambda: False)
    r = client.get("/health/")
    assert r.status_code == 503
    assert r.json()["components"]["cache"] == {"ok": False}
