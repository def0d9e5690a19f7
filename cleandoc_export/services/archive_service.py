"""Archive builder — packs CSVs, manifest, checksums and a README into one ZIP."""

import io
import zipfile
from datetime import date
from typing import Iterable

from cleandoc_export.core.exceptions import GenerationError
from cleandoc_export.services.artifacts import Artifact

README_TEMPLATE = """CleaniDoc HACCP-Export Archiv
================================

Dieses Archiv enthält maschinenlesbare Reinigungsprotokolle im CSV-Format.

Dateien:
- cleandoc_logs_*.csv: Hauptprotokolle mit Zeitstempel und Status
- cleandoc_log_steps_*.csv: Detaillierte Reinigungsschritte
- cleandoc_log_photos_*.csv: Foto-Metadaten für Dokumentation
- cleandoc_manifest_*.json: Vollständige Metadaten mit Prüfsummen
- cleandoc_checksums_*.txt: SHA-256 Prüfsummen aller Dateien

Import-Hinweise:
- Kodierung: UTF-8
- Trennzeichen: Semikolon (;)
- Erste Zeile: Spaltennamen

Prüfung:
- sha256sum -c cleandoc_checksums_{report_date}.txt

Datenschutz:
- DSGVO-konform
- Aufbewahrung: {retention_days} Tage
- Verschlüsselt gespeichert

Support: support@cleanidoc.de

Berichtsdatum: {report_date}
System: CleaniDoc Export v2.0
"""


class ArchiveService:
    """Builds the deterministic ``cleandoc_export_<date>.zip`` bundle."""

    COMPRESS_LEVEL = 6

    def readme(self, report_date: str, retention_days: int) -> str:
        return README_TEMPLATE.format(report_date=report_date, retention_days=retention_days)

    def create_zip_archive(
        self, report_date: str, members: Iterable[Artifact], retention_days: int = 730
    ) -> Artifact:
        """Zip the given artifacts plus README.txt.

        Entry timestamps are pinned to midnight of the report date so the same
        inputs always produce the same bytes.
        """
        try:
            day = date.fromisoformat(report_date)
        except ValueError:
            raise GenerationError(f"Invalid report date for archive: {report_date}")
        stamp = (day.year, day.month, day.day, 0, 0, 0)

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED,
                             compresslevel=self.COMPRESS_LEVEL) as zf:
            entries = [(a.filename, a.content) for a in members]
            entries.append(("README.txt", self.readme(report_date, retention_days).encode("utf-8")))
            for name, content in entries:
                info = zipfile.ZipInfo(name, date_time=stamp)
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = 0o644 << 16
                zf.writestr(info, content, compresslevel=self.COMPRESS_LEVEL)

        return Artifact(f"cleandoc_export_{report_date}.zip", buffer.getvalue(), "application/zip")


archive_service = ArchiveService()
