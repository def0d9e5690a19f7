"""Delivery channels: SMTP email, SFTP upload, HMAC-signed webhook."""

import hashlib
import hmac
import io
import json
import logging
import posixpath
import smtplib
from datetime import date, datetime, timedelta, timezone
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional, Dict, Any, Callable, List

import httpx
import paramiko
import paramiko.hostkeys

from cleandoc_export.connectors.base import DeliveryChannelBase
from cleandoc_export.core.config import settings
from cleandoc_export.core.exceptions import DeliveryError
from cleandoc_export.services.csv_export_service import format_iso8601

WEBHOOK_EVENT = "daily_export_completed"
WEBHOOK_VERSION = "1.0"
USER_AGENT = "CleaniDoc-Export-System/2.0"

logger = logging.getLogger("cleandoc_export")


def _german_date(report_date: str) -> str:
    return date.fromisoformat(report_date).strftime("%d.%m.%Y")


def load_smtp_settings() -> Dict[str, Any]:
    """SMTP settings from the active ``SmtpConfig`` row, else from the environment."""
    from cleandoc_export.db.session import SessionLocal
    from cleandoc_export.models.smtp_config import SmtpConfig

    db = SessionLocal()
    try:
        row = db.query(SmtpConfig).filter(SmtpConfig.is_active.is_(True)).order_by(SmtpConfig.id.desc()).first()
        if row is not None:
            return {
                "host": row.host,
                "port": row.port,
                "username": row.username,
                "password": row.password,
                "use_tls": row.use_tls,
                "sender": row.sender,
            }
    finally:
        db.close()
    return {
        "host": settings.SMTP_HOST,
        "port": settings.SMTP_PORT,
        "username": settings.SMTP_USER,
        "password": settings.SMTP_PASSWORD,
        "use_tls": settings.SMTP_USE_TLS,
        "sender": settings.SMTP_FROM,
    }


class EmailChannel(DeliveryChannelBase):
    """Send the PDF and ZIP as attachments, with download links in the body."""

    channel_type = "email"

    def __init__(
        self,
        smtp_factory: Optional[Callable[..., Any]] = None,
        smtp_settings: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ):
        self.smtp_factory = smtp_factory
        self.smtp_settings = smtp_settings
        self.timeout = timeout or settings.DELIVERY_TIMEOUT_SECONDS

    def is_configured(self, tenant) -> bool:
        return bool(tenant.email_recipients)

    def build_body(self, bundle, download_urls: Dict[str, Any]) -> str:
        stats = bundle.stats
        lines = [
            f"HACCP-Protokoll {_german_date(bundle.report_date)}",
            "====================================",
            "",
            "Sehr geehrte Damen und Herren,",
            "",
            f"anbei erhalten Sie das tägliche HACCP-Reinigungsprotokoll für den "
            f"{_german_date(bundle.report_date)}.",
            "",
            "ZUSAMMENFASSUNG:",
            f"- Protokolle: {stats.get('total_logs', 0)}",
            f"- Abgeschlossen: {stats.get('completed_logs', 0)}",
            f"- Schritte: {stats.get('total_steps', 0)}",
            f"- Fotos: {stats.get('total_photos', 0)}",
            "",
        ]
        if download_urls:
            lines.append("DOWNLOAD-LINKS (24h gültig):")
            for artifact_type in ("pdf", "zip"):
                link = download_urls.get(artifact_type)
                if link:
                    lines.append(f"- {link['filename']}: {link['download_url']}")
            lines.append("")
        lines.extend([
            "CSV-IMPORT:",
            "- Kodierung: UTF-8",
            "- Trennzeichen: Semikolon (;)",
            "- Erste Zeile: Spaltennamen",
            "",
            "Mit freundlichen Grüßen",
            "Ihr CleaniDoc Team",
            "",
            f"Export-ID: {bundle.export_id}",
        ])
        return "\n".join(lines) + "\n"

    def build_message(self, bundle, tenant, download_urls: Dict[str, Any], sender: str) -> EmailMessage:
        msg = EmailMessage()
        company = tenant.company_name or "CleaniDoc Kunde"
        msg["Subject"] = f"HACCP-Protokoll {_german_date(bundle.report_date)} - {company}"
        msg["From"] = sender
        msg["To"] = ", ".join(tenant.email_recipients)
        msg["Message-ID"] = make_msgid(domain="cleanidoc.de")
        msg["X-CleaniDoc-Export-ID"] = bundle.export_id
        msg["X-CleaniDoc-Report-Date"] = bundle.report_date
        msg["X-CleaniDoc-Tenant"] = tenant.tenant_id
        msg.set_content(self.build_body(bundle, download_urls))

        if bundle.pdf is not None:
            msg.add_attachment(
                bundle.pdf.content, maintype="application", subtype="pdf", filename=bundle.pdf.filename
            )
        if bundle.archive is not None:
            msg.add_attachment(
                bundle.archive.content, maintype="application", subtype="zip", filename=bundle.archive.filename
            )
        return msg

    def send(self, bundle, tenant, download_urls: Dict[str, Any]) -> Dict[str, Any]:
        smtp = self.smtp_settings or load_smtp_settings()
        msg = self.build_message(bundle, tenant, download_urls, smtp["sender"])
        port = int(smtp["port"])
        factory = self.smtp_factory or (smtplib.SMTP_SSL if port == 465 else smtplib.SMTP)

        with factory(smtp["host"], port, timeout=self.timeout) as client:
            if smtp.get("use_tls") and port != 465:
                client.starttls()
            if smtp.get("username"):
                client.login(smtp["username"], smtp.get("password") or "")
            client.send_message(msg)

        return {"message_id": msg["Message-ID"], "recipients": list(tenant.email_recipients)}


def _load_private_key(pem: str) -> paramiko.PKey:
    for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_cls.from_private_key(io.StringIO(pem))
        except (paramiko.SSHException, ValueError):
            continue
    raise DeliveryError("Unsupported SFTP private key format", retryable=False)


def build_ssh_client(tenant) -> paramiko.SSHClient:
    """SSH client that only trusts pinned host keys when any are configured.

    The tenant's ``sftp_host_key`` and the ``SFTP_KNOWN_HOSTS_FILE`` setting
    both switch on ``RejectPolicy``; without either, unknown keys are accepted.
    """
    client = paramiko.SSHClient()
    pinned = False

    if tenant.sftp_host_key:
        port = tenant.sftp_port or 22
        host_name = tenant.sftp_host if port == 22 else f"[{tenant.sftp_host}]:{port}"
        try:
            entry = paramiko.hostkeys.HostKeyEntry.from_line(f"{host_name} {tenant.sftp_host_key.strip()}")
        except (paramiko.hostkeys.InvalidHostKey, paramiko.SSHException, ValueError) as e:
            raise DeliveryError(f"Invalid SFTP host key for {tenant.sftp_host}: {e}", retryable=False)
        if entry is None or entry.key is None:
            raise DeliveryError(f"Invalid SFTP host key for {tenant.sftp_host}", retryable=False)
        client.get_host_keys().add(host_name, entry.key.get_name(), entry.key)
        pinned = True

    if settings.SFTP_KNOWN_HOSTS_FILE:
        client.load_host_keys(settings.SFTP_KNOWN_HOSTS_FILE)
        pinned = True

    if pinned:
        client.set_missing_host_key_policy(paramiko.RejectPolicy())
    else:
        logger.warning("⚠️ No SFTP host key pinned for %s; accepting the key it presents", tenant.sftp_host)
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    return client


def connect_sftp(tenant, timeout: float) -> paramiko.SSHClient:
    """Open an SSH connection with every phase bounded by ``timeout``."""
    client = build_ssh_client(tenant)
    pkey = _load_private_key(tenant.sftp_private_key) if tenant.sftp_private_key else None
    client.connect(
        tenant.sftp_host,
        port=tenant.sftp_port or 22,
        username=tenant.sftp_user,
        password=tenant.sftp_password,
        pkey=pkey,
        timeout=timeout,
        banner_timeout=timeout,
        auth_timeout=timeout,
        look_for_keys=False,
        allow_agent=False,
    )
    return client


class SftpChannel(DeliveryChannelBase):
    """Upload every artifact into ``<sftp_path>/<report_date>/``."""

    channel_type = "sftp"

    def __init__(self, connect: Optional[Callable[..., Any]] = None, timeout: Optional[float] = None):
        self.connect = connect or connect_sftp
        self.timeout = timeout or settings.DELIVERY_TIMEOUT_SECONDS

    def is_configured(self, tenant) -> bool:
        return bool(tenant.sftp_host)

    @staticmethod
    def _makedirs(sftp, path: str) -> None:
        current = "/" if path.startswith("/") else ""
        for part in [p for p in path.split("/") if p]:
            current = posixpath.join(current, part) if current else part
            try:
                sftp.stat(current)
            except IOError:
                sftp.mkdir(current)

    def send(self, bundle, tenant, download_urls: Dict[str, Any]) -> Dict[str, Any]:
        base_path = tenant.sftp_path or settings.DEFAULT_SFTP_PATH
        folder = posixpath.join(base_path, bundle.report_date)
        uploaded: List[str] = []

        client = self.connect(tenant, self.timeout)
        try:
            sftp = client.open_sftp()
            try:
                self._makedirs(sftp, folder)
                for artifact in bundle.by_type().values():
                    remote_path = posixpath.join(folder, artifact.filename)
                    sftp.putfo(io.BytesIO(artifact.content), remote_path)
                    uploaded.append(remote_path)
            finally:
                sftp.close()
        finally:
            client.close()

        return {"uploaded_files": uploaded}


class WebhookChannel(DeliveryChannelBase):
    """POST a JSON notification signed with HMAC-SHA256 over the exact body."""

    channel_type = "webhook"

    def __init__(self, http_client: Optional[httpx.Client] = None, timeout: Optional[float] = None):
        self.http_client = http_client
        self.timeout = timeout or settings.DELIVERY_TIMEOUT_SECONDS

    def is_configured(self, tenant) -> bool:
        return bool(tenant.webhook_url)

    @staticmethod
    def sign(body: bytes, secret: str) -> str:
        return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()

    @staticmethod
    def build_payload(bundle, tenant, download_urls: Dict[str, Any]) -> Dict[str, Any]:
        artifacts = bundle.by_type()
        files = {}
        for artifact_type, link in (download_urls or {}).items():
            artifact = artifacts.get(artifact_type)
            if artifact is None:
                continue
            files[artifact_type] = {
                "filename": artifact.filename,
                "size_bytes": artifact.size,
                "sha256": artifact.sha256,
                "download_url": link["download_url"],
                "expires_at": link["expires_at"],
            }
        retention_days = tenant.retention_days or settings.DEFAULT_RETENTION_DAYS
        retention_expires = datetime.combine(
            date.fromisoformat(bundle.report_date), datetime.min.time(), tzinfo=timezone.utc
        ) + timedelta(days=retention_days)

        return {
            "event": WEBHOOK_EVENT,
            "version": WEBHOOK_VERSION,
            "timestamp": format_iso8601(datetime.now(timezone.utc)),
            "tenant_id": tenant.tenant_id,
            "export_id": bundle.export_id,
            "report_date": bundle.report_date,
            "summary": dict(bundle.stats, total_size_bytes=sum(a.size for a in artifacts.values())),
            "files": files,
            "tenant_info": {
                "company_name": tenant.company_name or "",
                "location": tenant.company_location or "",
            },
            "compliance": {
                "haccp_requirements_met": True,
                "signature_count": bundle.signature_count,
                "audit_trail_complete": True,
                "retention_expires_at": format_iso8601(retention_expires),
            },
            "metadata": {
                "export_generated_by": "cleanidoc-system",
                "processing_time_ms": bundle.processing_time_ms,
            },
        }

    def send(self, bundle, tenant, download_urls: Dict[str, Any]) -> Dict[str, Any]:
        if not tenant.webhook_secret:
            raise DeliveryError("HMAC secret is required for webhook signatures", retryable=False)

        payload = self.build_payload(bundle, tenant, download_urls)
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-CleaniDoc-Signature": f"sha256={self.sign(body, tenant.webhook_secret)}",
            "X-CleaniDoc-Event": WEBHOOK_EVENT,
            "X-CleaniDoc-Version": WEBHOOK_VERSION,
            "User-Agent": USER_AGENT,
        }

        try:
            if self.http_client is not None:
                resp = self.http_client.post(tenant.webhook_url, content=body, headers=headers, timeout=self.timeout)
            else:
                resp = httpx.post(tenant.webhook_url, content=body, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise DeliveryError(f"Webhook request failed: {e}")

        if resp.status_code >= 500:
            raise DeliveryError(f"HTTP {resp.status_code}: {resp.text[:500]}", status_code=resp.status_code)
        if resp.status_code >= 400:
            raise DeliveryError(
                f"HTTP {resp.status_code}: {resp.text[:500]}", retryable=False, status_code=resp.status_code
            )
        return {"status_code": resp.status_code, "response_body": resp.text[:500]}


# Delivery channel registry
DELIVERY_CHANNEL_REGISTRY: Dict[str, type] = {
    "email": EmailChannel,
    "sftp": SftpChannel,
    "webhook": WebhookChannel,
}


def get_delivery_channel(channel_type: str, **kwargs) -> DeliveryChannelBase:
    cls = DELIVERY_CHANNEL_REGISTRY.get(channel_type)
    if not cls:
        raise ValueError(f"Unknown delivery channel: {channel_type}")
    return cls(**kwargs)
