"""Delivery dispatcher and channel tests."""

import hashlib
import hmac
import json

import httpx
import paramiko
import pytest

from cleandoc_export.connectors.delivery_channels import (
    EmailChannel, SftpChannel, WebhookChannel, build_ssh_client, get_delivery_channel,
)
from cleandoc_export.core.exceptions import DeliveryError
from cleandoc_export.services.delivery_service import DeliveryService, retry_operation
from tests.factories import (
    FakeSftpServer, FakeSMTPFactory, SMTP_SETTINGS, make_bundle, make_tenant,
)

DOWNLOAD_URLS = {
    "pdf": {"download_url": "https://minio.test/r.pdf", "expires_at": "2024-03-17T02:00:00.000Z",
            "filename": "cleandoc_daily_report_2024-03-15.pdf"},
    "zip": {"download_url": "https://minio.test/e.zip", "expires_at": "2024-03-17T02:00:00.000Z",
            "filename": "cleandoc_export_2024-03-15.zip"},
}


def webhook_client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def make_service(no_sleep, smtp=None, sftp=None, webhook_handler=None) -> DeliveryService:
    return DeliveryService(
        channels={
            "email": EmailChannel(smtp_factory=smtp or FakeSMTPFactory(), smtp_settings=SMTP_SETTINGS),
            "sftp": SftpChannel(connect=(sftp or FakeSftpServer()).connect),
            "webhook": WebhookChannel(
                http_client=webhook_client(webhook_handler or (lambda request: httpx.Response(200, text="ok")))
            ),
        },
        max_attempts=3,
        retry_delay=5.0,
        sleep=no_sleep,
    )


@pytest.fixture
def bundle():
    return make_bundle()


@pytest.fixture
def tenant():
    return make_tenant()


@pytest.mark.unit
class TestRetryOperation:
    """retry_operation"""

    def test_succeeds_after_failures(self, no_sleep):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("boom")
            return "done"

        assert retry_operation(flaky, max_attempts=3, initial_delay=5.0, sleep=no_sleep) == "done"
        assert no_sleep.calls == [5.0, 10.0]

    def test_gives_up_after_max_attempts(self, no_sleep):
        def always_fails():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            retry_operation(always_fails, max_attempts=3, initial_delay=5.0, sleep=no_sleep)
        assert no_sleep.calls == [5.0, 10.0]

    def test_non_retryable_stops_immediately(self, no_sleep):
        def rejected():
            raise DeliveryError("HTTP 400", retryable=False)

        with pytest.raises(DeliveryError):
            retry_operation(rejected, sleep=no_sleep)
        assert no_sleep.calls == []


@pytest.mark.unit
class TestDeliveryIndependence:
    """One failing channel never stops the others"""

    def test_sftp_down_email_and_webhook_succeed(self, bundle, tenant, no_sleep):
        smtp = FakeSMTPFactory()
        sftp = FakeSftpServer(fail=True)
        service = make_service(no_sleep, smtp=smtp, sftp=sftp)

        results = service.deliver(bundle, tenant, DOWNLOAD_URLS)

        assert results["email"]["success"] is True
        assert results["webhook"]["success"] is True
        assert results["webhook"]["status_code"] == 200
        assert results["sftp"]["attempted"] is True
        assert results["sftp"]["success"] is False
        assert "Connection refused" in results["sftp"]["error"]
        assert sftp.connects == 3
        assert len(smtp.messages) == 1
        assert all(r["timestamp"] for r in results.values())

    def test_unconfigured_channels_not_attempted(self, bundle, no_sleep):
        tenant = make_tenant(sftp_host=None, webhook_url=None)
        results = make_service(no_sleep).deliver(bundle, tenant, DOWNLOAD_URLS)
        assert results["email"]["attempted"] is True
        assert results["sftp"] == {"attempted": False, "success": False, "error": None, "timestamp": None}
        assert results["webhook"]["attempted"] is False
        assert results["webhook"]["status_code"] is None

    def test_requested_channels_only(self, bundle, tenant, no_sleep):
        smtp = FakeSMTPFactory()
        results = make_service(no_sleep, smtp=smtp).deliver(bundle, tenant, DOWNLOAD_URLS, channels=["webhook"])
        assert results["email"]["attempted"] is False
        assert results["webhook"]["success"] is True
        assert smtp.messages == []

    def test_summarize(self, bundle, tenant, no_sleep):
        service = make_service(no_sleep, sftp=FakeSftpServer(fail=True))
        summary = service.summarize(service.deliver(bundle, tenant, DOWNLOAD_URLS))
        assert summary == {
            "total_methods": 3,
            "successful_deliveries": 2,
            "failed_deliveries": 1,
            "not_attempted": 0,
        }


@pytest.mark.unit
class TestEmailChannel:
    """SMTP email"""

    def test_message_contents(self, bundle, tenant):
        smtp = FakeSMTPFactory()
        result = EmailChannel(smtp_factory=smtp, smtp_settings=SMTP_SETTINGS, timeout=30).send(
            bundle, tenant, DOWNLOAD_URLS
        )
        msg = smtp.messages[0]

        assert msg["Subject"] == "HACCP-Protokoll 15.03.2024 - Bäckerei Müller GmbH"
        assert msg["To"] == "qm@example.com"
        assert msg["X-CleaniDoc-Export-ID"] == "export-1"
        attachments = [part.get_filename() for part in msg.iter_attachments()]
        assert attachments == ["cleandoc_daily_report_2024-03-15.pdf", "cleandoc_export_2024-03-15.zip"]
        assert "https://minio.test/e.zip" in msg.get_body(("plain",)).get_content()
        assert smtp.calls == [("smtp.example.com", 587, 30)]
        assert smtp.tls is True
        assert smtp.logins == [("mailer", "pw")]
        assert result["recipients"] == ["qm@example.com"]

    def test_not_configured_without_recipients(self):
        assert EmailChannel().is_configured(make_tenant(email_recipients_json=None)) is False


@pytest.mark.unit
class TestSftpChannel:
    """SFTP upload"""

    def test_uploads_into_dated_folder(self, bundle, tenant):
        server = FakeSftpServer()
        result = SftpChannel(connect=server.connect).send(bundle, tenant, DOWNLOAD_URLS)

        folder = "/incoming/cleanidoc/2024-03-15"
        assert folder in server.dirs
        assert f"{folder}/cleandoc_export_2024-03-15.zip" in server.files
        assert server.files[f"{folder}/cleandoc_logs_2024-03-15_v1.csv"] == bundle.csvs["csv_logs"].content
        assert len(result["uploaded_files"]) == 7
        assert server.closed == 1


@pytest.mark.unit
class TestSftpHostKeys:
    """Host key pinning"""

    @pytest.fixture(scope="class")
    def host_key(self):
        return paramiko.RSAKey.generate(1024)

    def test_pinned_key_rejects_unknown_hosts(self, host_key):
        tenant = make_tenant(sftp_host_key=f"{host_key.get_name()} {host_key.get_base64()}")
        client = build_ssh_client(tenant)

        assert isinstance(client._policy, paramiko.RejectPolicy)
        known = client.get_host_keys().lookup("sftp.example.com")
        assert known[host_key.get_name()] == host_key

    def test_non_default_port_uses_bracketed_host(self, host_key):
        tenant = make_tenant(sftp_port=2222, sftp_host_key=f"{host_key.get_name()} {host_key.get_base64()}")
        client = build_ssh_client(tenant)
        assert client.get_host_keys().lookup("[sftp.example.com]:2222") is not None

    def test_unpinned_host_accepts_presented_key(self):
        client = build_ssh_client(make_tenant())
        assert isinstance(client._policy, paramiko.AutoAddPolicy)

    def test_malformed_key_is_not_retried(self):
        with pytest.raises(DeliveryError) as exc:
            build_ssh_client(make_tenant(sftp_host_key="ssh-rsa not-base64!"))
        assert exc.value.retryable is False


@pytest.mark.unit
class TestWebhookChannel:
    """HMAC-signed webhook"""

    def test_signature_covers_exact_body(self, bundle, tenant):
        captured = {}

        def handler(request: httpx.Request):
            captured["body"] = request.content
            captured["headers"] = request.headers
            return httpx.Response(202, text="accepted")

        result = WebhookChannel(http_client=webhook_client(handler)).send(bundle, tenant, DOWNLOAD_URLS)

        expected = hmac.new(b"whsec-test", captured["body"], hashlib.sha256).hexdigest()
        assert captured["headers"]["X-CleaniDoc-Signature"] == f"sha256={expected}"
        assert captured["headers"]["X-CleaniDoc-Event"] == "daily_export_completed"
        assert result["status_code"] == 202

        payload = json.loads(captured["body"])
        assert payload["export_id"] == "export-1"
        assert payload["report_date"] == "2024-03-15"
        assert payload["summary"]["total_logs"] == 2
        assert payload["files"]["zip"]["download_url"] == "https://minio.test/e.zip"
        assert payload["files"]["zip"]["sha256"] == bundle.archive.sha256
        assert payload["compliance"]["signature_count"] == 1

    def test_4xx_not_retried(self, bundle, tenant, no_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, text="bad request")

        results = make_service(no_sleep, webhook_handler=handler).deliver(
            bundle, tenant, DOWNLOAD_URLS, channels=["webhook"]
        )
        assert len(calls) == 1
        assert no_sleep.calls == []
        assert results["webhook"]["success"] is False
        assert results["webhook"]["status_code"] == 400

    def test_5xx_retried_with_backoff(self, bundle, tenant, no_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        results = make_service(no_sleep, webhook_handler=handler).deliver(
            bundle, tenant, DOWNLOAD_URLS, channels=["webhook"]
        )
        assert len(calls) == 3
        assert no_sleep.calls == [5.0, 10.0]
        assert results["webhook"]["status_code"] == 503

    def test_timeout_is_retryable(self, bundle, tenant, no_sleep):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200)

        results = make_service(no_sleep, webhook_handler=handler).deliver(
            bundle, tenant, DOWNLOAD_URLS, channels=["webhook"]
        )
        assert results["webhook"]["success"] is True
        assert no_sleep.calls == [5.0]

    def test_missing_secret_fails_without_request(self, bundle, no_sleep):
        calls = []
        tenant = make_tenant(webhook_secret=None)
        results = make_service(no_sleep, webhook_handler=lambda r: calls.append(r) or httpx.Response(200)).deliver(
            bundle, tenant, DOWNLOAD_URLS, channels=["webhook"]
        )
        assert results["webhook"]["attempted"] is True
        assert results["webhook"]["success"] is False
        assert "secret" in results["webhook"]["error"]
        assert calls == []


@pytest.mark.unit
def test_registry_builds_channels():
    assert isinstance(get_delivery_channel("sftp"), SftpChannel)
    with pytest.raises(ValueError):
        get_delivery_channel("fax")
