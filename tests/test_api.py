"""
Tests for EasyPDF Backend API endpoints outside the PDF tools.

Tests cover:
- Health check and identity provider listing
- API key and subscription administration
- Upload validation and the storage fallback
- Download gateway (path checks, tokens, headers)
- Profile, history, activity, stats and subscription cancellation
- Cloud export
- Rate limiting and security headers
"""

from pathlib import Path
from urllib.parse import quote

from fastapi.testclient import TestClient

from easypdf_backend.errors import StorageFailure


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_security_headers_present(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "Referrer-Policy" in response.headers


class TestAuthProviders:
    def test_no_providers_by_default(self, client):
        assert client.get("/auth/providers").json() == {"providers": []}

    def test_configured_provider_listed(self, make_app):
        app = make_app({"auth": {"providers": {"google": {"client_id": "id", "client_secret": "secret"}}}})
        response = TestClient(app).get("/auth/providers")
        assert response.json() == {"providers": ["google"]}


class TestAPIKeyManagement:
    """Tests for the /admin endpoints."""

    def test_create_api_key_requires_admin_key(self, client):
        response = client.post("/admin/keys", json={"email": "a@example.com"})
        assert response.status_code == 401

    def test_create_api_key_with_invalid_admin_key(self, client):
        response = client.post(
            "/admin/keys",
            json={"email": "a@example.com"},
            headers={"X-Admin-Key": "invalid-key"},
        )
        assert response.status_code == 401

    def test_admin_disabled_without_configured_key(self, make_app):
        app = make_app({"security": {"admin_api_key": None}})
        response = TestClient(app).get("/admin/keys", headers={"X-Admin-Key": "anything"})
        assert response.status_code == 503

    def test_create_api_key(self, client, admin_headers):
        response = client.post(
            "/admin/keys",
            json={"email": "new@example.com", "name": "New User"},
            headers=admin_headers,
        )
        assert response.status_code == 201

        data = response.json()
        assert data["apiKey"].startswith("epdf_")
        assert data["record"]["isActive"] is True
        assert data["apiKey"].startswith(data["record"]["prefix"])

        profile = client.get("/user/profile", headers={"X-API-Key": data["apiKey"]})
        assert profile.status_code == 200
        assert profile.json()["email"] == "new@example.com"
        assert profile.json()["name"] == "New User"

    def test_second_key_for_same_email_reuses_user(self, issue_key):
        first = issue_key("same@example.com")
        second = issue_key("same@example.com")
        assert first["user_id"] == second["user_id"]
        assert first["headers"] != second["headers"]

    def test_invalid_email_rejected(self, client, admin_headers):
        response = client.post("/admin/keys", json={"email": "not-an-email"}, headers=admin_headers)
        assert response.status_code == 400

    def test_list_api_keys(self, client, admin_headers, user):
        response = client.get("/admin/keys", headers=admin_headers)
        assert response.status_code == 200

        data = response.json()
        assert isinstance(data, list)
        assert any(record["userId"] == user["user_id"] for record in data)

    def test_revoke_api_key(self, client, admin_headers, user):
        key_id = client.get("/admin/keys", headers=admin_headers).json()[0]["id"]

        revoke_response = client.delete(f"/admin/keys/{key_id}", headers=admin_headers)
        assert revoke_response.status_code == 200
        assert revoke_response.json() == {"status": "revoked"}

        # Revoked key no longer authenticates
        assert client.get("/user/profile", headers=user["headers"]).status_code == 401

    def test_revoke_unknown_key(self, client, admin_headers):
        response = client.delete("/admin/keys/does-not-exist", headers=admin_headers)
        assert response.status_code == 404

    def test_grant_subscription_unknown_user(self, client, admin_headers):
        response = client.post("/admin/subscriptions", json={"userId": "ghost"}, headers=admin_headers)
        assert response.status_code == 404

    def test_grant_subscription_makes_user_premium(self, client, premium_user):
        stats = client.get("/user/stats", headers=premium_user["headers"]).json()
        assert stats["premiumUser"] is True

    def test_unknown_api_key_rejected(self, client):
        response = client.get("/user/profile", headers={"X-API-Key": "epdf_bogus"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"


class TestUpload:
    """Tests for the /upload endpoint."""

    def test_upload_single_pdf(self, client, app, make_pdf):
        response = client.post(
            "/upload",
            files=[("files", ("My Report.pdf", make_pdf(2), "application/pdf"))],
        )
        assert response.status_code == 200

        data = response.json()
        assert data["message"] == "Files uploaded successfully"
        uploaded = data["files"][0]
        assert uploaded["originalName"] == "My Report.pdf"
        assert uploaded["fileName"].endswith("_my_report.pdf")
        assert uploaded["type"] == "application/pdf"

        record = app.state.db.get_pdf_file(uploaded["id"])
        assert record is not None
        assert record["file_size"] == uploaded["size"]
        assert record["file_path"].exists()
        assert app.state.file_store.is_allowed(record["file_path"])

    def test_upload_multiple_files(self, client, make_pdf):
        response = client.post(
            "/upload",
            files=[
                ("files", ("a.pdf", make_pdf(1), "application/pdf")),
                ("files", ("b.pdf", make_pdf(2), "application/pdf")),
            ],
        )
        assert response.status_code == 200
        files = response.json()["files"]
        assert len(files) == 2
        assert files[0]["id"] != files[1]["id"]

    def test_upload_owned_by_caller(self, client, app, user, upload):
        file_id = upload(headers=user["headers"])
        assert app.state.db.get_pdf_file(file_id)["user_id"] == user["user_id"]

    def test_upload_rejects_non_pdf(self, client):
        response = client.post("/upload", files=[("files", ("notes.txt", b"hello", "text/plain"))])
        assert response.status_code == 400
        assert response.json()["detail"] == "Only PDF files are allowed"

    def test_upload_rejects_oversized_file(self, make_app, make_pdf):
        app = make_app({"storage": {"max_upload_bytes": 100}})
        response = TestClient(app).post("/upload", files=[("files", ("big.pdf", make_pdf(3), "application/pdf"))])
        assert response.status_code == 400
        assert response.json()["detail"].startswith("File size exceeds")

    def test_upload_requires_files(self, client):
        response = client.post("/upload")
        assert response.status_code == 400

    def test_storage_failure_falls_back_to_file_name(self, client, app, make_pdf, monkeypatch):
        def failing_insert(**kwargs):
            raise StorageFailure("database is locked")

        monkeypatch.setattr(app.state.db, "create_pdf_file", failing_insert)
        response = client.post("/upload", files=[("files", ("doc.pdf", make_pdf(1), "application/pdf"))])
        assert response.status_code == 200

        uploaded = response.json()["files"][0]
        assert uploaded["id"] == uploaded["fileName"]


class TestDownload:
    """Tests for the /download gateway."""

    def test_download_relative_output_path(self, client, app):
        target = app.state.file_store.output_root / "x.pdf"
        target.write_bytes(b"%PDF-1.4 test")

        response = client.get("/download", params={"path": "/outputs/x.pdf"})
        assert response.status_code == 200
        assert response.content == b"%PDF-1.4 test"
        assert response.headers["content-type"] == "application/pdf"
        assert response.headers["content-disposition"].startswith("attachment")
        assert "x.pdf" in response.headers["content-disposition"]
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert response.headers["pragma"] == "no-cache"
        assert response.headers["x-download-token"]

    def test_download_outside_roots_forbidden(self, client):
        response = client.get("/download", params={"path": "/etc/hosts"})
        assert response.status_code == 403
        assert response.json()["detail"] == "Access denied"

    def test_download_encoded_traversal_forbidden(self, client):
        response = client.get("/download?path=%252e%252e%252f%252e%252e%252fetc%252fpasswd")
        assert response.status_code == 403

    def test_download_missing_file(self, client):
        response = client.get("/download", params={"path": "/outputs/missing.pdf"})
        assert response.status_code == 404

    def test_download_requires_path(self, client):
        response = client.get("/download")
        assert response.status_code == 400

    def test_download_content_type_by_extension(self, client, app):
        (app.state.file_store.output_root / "ocr_result.txt").write_text("hello")
        response = client.get("/download", params={"path": "/outputs/ocr_result.txt"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")

    def test_download_with_valid_token(self, client, app):
        target = app.state.file_store.output_root / "signed.pdf"
        target.write_bytes(b"%PDF-1.4 signed")
        token = app.state.token_signer.generate(target.resolve())

        response = client.get(f"/download?path={quote(str(target))}&token={quote(token)}")
        assert response.status_code == 200

    def test_download_with_token_for_other_file(self, client, app):
        store = app.state.file_store
        (store.output_root / "a.pdf").write_bytes(b"a")
        (store.output_root / "b.pdf").write_bytes(b"b")
        token = app.state.token_signer.generate((store.output_root / "a.pdf").resolve())

        response = client.get("/download", params={"path": "/outputs/b.pdf", "token": token})
        assert response.status_code == 403

    def test_download_with_tampered_token(self, client, app):
        target = app.state.file_store.output_root / "t.pdf"
        target.write_bytes(b"t")
        token = app.state.token_signer.generate(target.resolve())
        payload, signature = token.split(".")
        tampered = f"{payload}.{signature[::-1]}"

        response = client.get("/download", params={"path": "/outputs/t.pdf", "token": tampered})
        assert response.status_code == 403

    def test_fresh_token_validates_for_same_file(self, client, app):
        target = app.state.file_store.output_root / "again.pdf"
        target.write_bytes(b"again")
        first = client.get("/download", params={"path": "/outputs/again.pdf"})
        fresh = first.headers["x-download-token"]

        second = client.get("/download", params={"path": "/outputs/again.pdf", "token": fresh})
        assert second.status_code == 200


class TestUserProfile:
    def test_profile_requires_api_key(self, client):
        assert client.get("/user/profile").status_code == 401

    def test_update_name(self, client, user):
        response = client.put("/user/profile", json={"name": "Renamed"}, headers=user["headers"])
        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"
        assert response.json()["email"] == "user@example.com"

    def test_update_email_taken(self, client, user, issue_key):
        issue_key("other@example.com")
        response = client.put("/user/profile", json={"email": "other@example.com"}, headers=user["headers"])
        assert response.status_code == 400
        assert response.json()["detail"] == "Email already taken"

    def test_update_invalid_email(self, client, user):
        response = client.put("/user/profile", json={"email": "nope"}, headers=user["headers"])
        assert response.status_code == 400


class TestUserHistory:
    def test_history_lists_operations_newest_first(self, client, user, upload):
        file_id = upload(headers=user["headers"])
        client.post("/pdf/rotate", json={"fileId": file_id}, headers=user["headers"])
        client.post("/pdf/compress", json={"fileId": file_id}, headers=user["headers"])

        response = client.get("/user/history", headers=user["headers"])
        assert response.status_code == 200
        history = response.json()["history"]
        assert [entry["operation"] for entry in history] == ["compress", "rotate"]
        assert history[0]["status"] == "completed"
        assert history[0]["fileId"] == file_id
        assert history[0]["result"]["filePath"].endswith(".pdf")

    def test_activity_limited_to_ten(self, client, app, user):
        for index in range(12):
            app.state.db.add_history(job_id=f"job-{index}", operation="rotate", status="completed", user_id=user["user_id"])

        assert len(client.get("/user/history", headers=user["headers"]).json()["history"]) == 12
        assert len(client.get("/user/activity", headers=user["headers"]).json()["history"]) == 10

    def test_history_entry_without_result(self, client, app, user):
        app.state.db.add_history(job_id="job-1", operation="rotate", status="completed", user_id=user["user_id"])
        entry = client.get("/user/history", headers=user["headers"]).json()["history"][0]
        assert entry.get("result") is None

    def test_other_users_history_hidden(self, client, user, issue_key, upload):
        other = issue_key("someone@example.com")
        file_id = upload(headers=other["headers"])
        client.post("/pdf/rotate", json={"fileId": file_id}, headers=other["headers"])

        assert client.get("/user/history", headers=user["headers"]).json()["history"] == []


class TestUserStats:
    def test_stats_counts(self, client, user, upload):
        file_id = upload(headers=user["headers"])
        client.post("/pdf/rotate", json={"fileId": file_id}, headers=user["headers"])

        response = client.get("/user/stats", headers=user["headers"])
        assert response.status_code == 200
        assert response.json() == {
            "totalFiles": 1,
            "totalOperations": 1,
            "thisMonthOperations": 1,
            "premiumUser": False,
        }


class TestSubscriptionCancel:
    def test_cancel_without_subscription(self, client, user):
        response = client.post("/user/subscription/cancel", headers=user["headers"])
        assert response.status_code == 404
        assert response.json()["detail"] == "No active subscription found"

    def test_cancel_at_period_end(self, client, premium_user):
        response = client.post("/user/subscription/cancel", headers=premium_user["headers"])
        assert response.status_code == 200

        data = response.json()
        assert data["message"] == "Subscription will be cancelled at the end of the current billing period"
        assert data["subscription"]["cancelAtPeriodEnd"] is True
        assert data["subscription"]["status"] == "active"

        # Entitlement lasts until the period ends; a second cancel finds nothing
        assert client.get("/user/stats", headers=premium_user["headers"]).json()["premiumUser"] is True
        assert client.post("/user/subscription/cancel", headers=premium_user["headers"]).status_code == 404


class FakeS3Client:
    def __init__(self):
        self.uploads = []

    def upload_file(self, filename, bucket, key):
        self.uploads.append((filename, bucket, key))

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        return f"https://{Params['Bucket']}.s3.example.com/{Params['Key']}?expires={ExpiresIn}"


class TestCloudExport:
    def test_export_not_configured(self, client, user):
        response = client.post("/cloud/export", json={"path": "/outputs/x.pdf"}, headers=user["headers"])
        assert response.status_code == 503

    def test_export_uploads_and_presigns(self, make_app):
        s3 = FakeS3Client()
        app = make_app({"cloud": {"s3_bucket": "exports-bucket"}}, s3_client=s3)
        client = TestClient(app)
        key_response = client.post(
            "/admin/keys", json={"email": "cloud@example.com"}, headers={"X-Admin-Key": "test-admin-key-12345"}
        ).json()
        headers = {"X-API-Key": key_response["apiKey"]}
        user_id = key_response["record"]["userId"]
        (app.state.file_store.output_root / "report.pdf").write_bytes(b"%PDF")

        response = client.post("/cloud/export", json={"path": "/outputs/report.pdf"}, headers=headers)
        assert response.status_code == 200

        data = response.json()
        assert data["key"] == f"exports/{user_id}/report.pdf"
        assert data["expiresIn"] == 3600
        assert data["url"].startswith("https://exports-bucket.")
        assert s3.uploads[0][1:] == ("exports-bucket", data["key"])

    def test_export_path_checked(self, make_app):
        app = make_app({"cloud": {"s3_bucket": "exports-bucket"}}, s3_client=FakeS3Client())
        client = TestClient(app)
        key = client.post(
            "/admin/keys", json={"email": "cloud@example.com"}, headers={"X-Admin-Key": "test-admin-key-12345"}
        ).json()["apiKey"]

        response = client.post("/cloud/export", json={"path": "../../etc/passwd"}, headers={"X-API-Key": key})
        assert response.status_code == 403

    def test_export_of_encrypted_upload_sends_plaintext(self, make_app, make_pdf):
        s3 = FakeS3Client()
        sent = []
        s3.upload_file = lambda filename, bucket, key: sent.append((Path(filename).read_bytes(), key))
        app = make_app({"cloud": {"s3_bucket": "exports-bucket"}, "storage": {"encrypt_uploads": True}}, s3_client=s3)
        client = TestClient(app)
        key = client.post(
            "/admin/keys", json={"email": "cloud@example.com"}, headers={"X-Admin-Key": "test-admin-key-12345"}
        ).json()["apiKey"]
        content = make_pdf(1)
        uploaded = client.post("/upload", files=[("files", ("doc.pdf", content, "application/pdf"))]).json()["files"][0]

        response = client.post("/cloud/export", json={"path": uploaded["filePath"]}, headers={"X-API-Key": key})

        assert response.status_code == 200
        ((body, object_key),) = sent
        assert body == content
        assert object_key.endswith(f"/{uploaded['fileName']}")

    def test_export_requires_user(self, client):
        assert client.post("/cloud/export", json={"path": "/outputs/x.pdf"}).status_code == 401


class TestRateLimiting:
    def test_download_rate_limited_per_ip(self, make_app):
        app = make_app({"rate_limits": {"download": {"limit": 2, "window_seconds": 300}}})
        client = TestClient(app)
        (app.state.file_store.output_root / "x.pdf").write_bytes(b"x")

        for _ in range(2):
            assert client.get("/download", params={"path": "/outputs/x.pdf"}).status_code == 200
        limited = client.get("/download", params={"path": "/outputs/x.pdf"})
        assert limited.status_code == 429

        # A different forwarded client IP has its own window
        other = client.get(
            "/download",
            params={"path": "/outputs/x.pdf"},
            headers={"X-Forwarded-For": "203.0.113.9"},
        )
        assert other.status_code == 200

    def test_route_groups_are_independent(self, make_app):
        app = make_app({"rate_limits": {"download": {"limit": 1, "window_seconds": 300}}})
        client = TestClient(app)
        client.get("/download", params={"path": "/outputs/none.pdf"})
        assert client.get("/download", params={"path": "/outputs/none.pdf"}).status_code == 429
        assert client.post("/pdf/rotate", json={}).status_code == 400
