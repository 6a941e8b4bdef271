def test_dead_letter_stats_and_list(client, dead_letter_job):
    dead_letter_job("shopee")
    dead_letter_job("tiktok", error={"status_code": 401, "message": "token expired"})

    stats = client.get("/api/v1/dead-letter/stats").json()["data"]
    assert stats["total"] == 2
    assert stats["by_platform"] == {"shopee": 1, "tiktok": 1}
    assert stats["by_error_kind"] == {"validation": 1, "permission_denied": 1}
    assert len(stats["recent"]) == 2

    listed = client.get("/api/v1/dead-letter", params={"error_kind": "permission_denied"}).json()["data"]["entries"]
    assert len(listed) == 1
    assert listed[0]["platform"] == "tiktok"
    assert listed[0]["error_message"] == "token expired"


def test_list_rejects_bad_filters(client):
    assert client.get("/api/v1/dead-letter", params={"error_kind": "bogus"}).status_code == 422
    assert client.get("/api/v1/dead-letter", params={"limit": 0}).status_code == 422


def test_single_retry(client, dead_letter_job):
    batch_id, _, entry_id = dead_letter_job()
    r = client.post(f"/api/v1/dead-letter/{entry_id}/retry")
    assert r.status_code == 200
    job_id = r.json()["data"]["job_id"]

    job = client.get(f"/api/v1/sync/jobs/{job_id}").json()["data"]
    assert job["status"] == "pending"
    assert job["batch_id"] == batch_id
    assert client.get(f"/api/v1/sync/batches/{batch_id}").json()["data"]["total"] == 2


def test_single_retry_unknown_entry(client):
    r = client.post("/api/v1/dead-letter/missing/retry")
    assert r.status_code == 404
    assert r.json()["success"] is False


def test_bulk_retry(client, dead_letter_job):
    dead_letter_job("shopee")
    dead_letter_job("shopee")
    dead_letter_job("tiktok")

    r = client.post("/api/v1/dead-letter/retry", json={"platform": "shopee"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["data"]["matched"] == 2
    assert body["data"]["retried"] == 2
    assert len(body["data"]["job_ids"]) == 2

    stats = client.get("/api/v1/dead-letter/stats").json()["data"]
    assert stats["retried_entries"] == 2


def test_bulk_retry_rejects_zero_limit(client):
    assert client.post("/api/v1/dead-letter/retry", json={"limit": 0}).status_code == 422


def test_cleanup_window_validation(client, dead_letter_job, clock):
    dead_letter_job()
    for days in (0, 366, 400):
        r = client.delete("/api/v1/dead-letter", params={"older_than_days": days})
        assert r.status_code == 400, days
    assert client.delete("/api/v1/dead-letter").status_code == 422

    r = client.delete("/api/v1/dead-letter", params={"older_than_days": 30})
    assert r.status_code == 200
    assert r.json()["data"]["deleted"] == 0

    clock.advance(days=31)
    r = client.delete("/api/v1/dead-letter", params={"older_than_days": 30})
    assert r.json()["data"]["deleted"] == 1
