"""Manifest and checksum builder for a daily export's artifact set."""

import json
from datetime import datetime, timezone
from typing import Optional, Dict

from cleandoc_export.core.config import settings
from cleandoc_export.services.artifacts import Artifact
from cleandoc_export.services.csv_export_service import format_iso8601

MANIFEST_SCHEMA_VERSION = "v1"
GENERATOR = "cleanidoc-export-system"

# Manifest key for each artifact type.
_MANIFEST_KEYS = {
    "csv_logs": "csv_logs",
    "csv_steps": "csv_steps",
    "csv_photos": "csv_photos",
    "pdf": "pdf_report",
}


class ManifestService:
    """Describes the generated files and their SHA-256 hashes."""

    def build_manifest(
        self,
        tenant_id: str,
        report_date: str,
        artifacts: Dict[str, Artifact],
        retention_days: int,
        encryption_at_rest: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> Artifact:
        """Build ``cleandoc_manifest_<date>.json`` from CSV and PDF artifacts."""
        now = now or datetime.now(timezone.utc)
        if encryption_at_rest is None:
            encryption_at_rest = settings.STORAGE_SSE_ENABLED

        files = {}
        for artifact_type in ("csv_logs", "csv_steps", "csv_photos", "pdf"):
            artifact = artifacts.get(artifact_type)
            if artifact is not None:
                files[_MANIFEST_KEYS[artifact_type]] = artifact.describe()

        manifest = {
            "export_info": {
                "schema_version": MANIFEST_SCHEMA_VERSION,
                "export_date": format_iso8601(now),
                "report_date": report_date,
                "tenant_id": tenant_id,
                "generated_by": GENERATOR,
            },
            "files": files,
            "integrity": {
                "algorithm": "SHA-256",
                "verification_instructions": "sha256sum -c cleandoc_checksums_%s.txt" % report_date,
                "total_files": len(files),
            },
            "compliance": {
                "haccp_compliant": True,
                "data_retention_days": retention_days,
                "gdpr_compliant": True,
                "encryption_at_rest": bool(encryption_at_rest),
            },
        }
        content = json.dumps(manifest, indent=2, ensure_ascii=False).encode("utf-8")
        return Artifact(f"cleandoc_manifest_{report_date}.json", content, "application/json")

    def build_checksums(
        self,
        report_date: str,
        artifacts: Dict[str, Artifact],
        manifest: Artifact,
        now: Optional[datetime] = None,
    ) -> Artifact:
        """Build a ``sha256sum -c`` compatible checksums file.

        Lists every CSV, the PDF and the manifest, in that order.
        """
        now = now or datetime.now(timezone.utc)
        lines = [
            "# CleaniDoc SHA-256 Checksums",
            f"# Generated: {format_iso8601(now)}",
            "# Format: <sha256>  <filename>",
            "",
        ]
        for artifact_type in ("csv_logs", "csv_steps", "csv_photos", "pdf"):
            artifact = artifacts.get(artifact_type)
            if artifact is not None:
                lines.append(f"{artifact.sha256}  {artifact.filename}")
        lines.append(f"{manifest.sha256}  {manifest.filename}")
        content = ("\n".join(lines) + "\n").encode("utf-8")
        return Artifact(f"cleandoc_checksums_{report_date}.txt", content, "text/plain; charset=utf-8")


manifest_service = ManifestService()
