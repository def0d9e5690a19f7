"""Generated export artifacts and the hashing helper shared by all generators."""

import hashlib
from dataclasses import dataclass, field
from typing import Optional, Dict, Any


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass
class Artifact:
    """One generated output file held in memory until upload."""

    filename: str
    content: bytes
    content_type: str
    row_count: Optional[int] = None
    sha256: str = field(init=False)
    size: int = field(init=False)

    def __post_init__(self):
        self.sha256 = sha256_hex(self.content)
        self.size = len(self.content)

    def describe(self) -> Dict[str, Any]:
        """Manifest entry for this artifact."""
        entry: Dict[str, Any] = {
            "filename": self.filename,
            "size_bytes": self.size,
        }
        if self.row_count is not None:
            entry["row_count"] = self.row_count
        entry["sha256"] = self.sha256
        entry["content_type"] = self.content_type
        return entry


@dataclass
class ExportBundle:
    """Everything produced by one export run, handed to storage and delivery."""

    export_id: str
    tenant_id: str
    report_date: str
    stats: Dict[str, int]
    csvs: Dict[str, Artifact] = field(default_factory=dict)  # csv_logs / csv_steps / csv_photos
    pdf: Optional[Artifact] = None
    manifest: Optional[Artifact] = None
    checksums: Optional[Artifact] = None
    archive: Optional[Artifact] = None
    signature_count: int = 0
    processing_time_ms: int = 0

    def by_type(self) -> Dict[str, Artifact]:
        """Artifacts keyed by their export-record type name, skipping absent ones."""
        items: Dict[str, Artifact] = {}
        if self.pdf is not None:
            items["pdf"] = self.pdf
        items.update(self.csvs)
        if self.manifest is not None:
            items["manifest"] = self.manifest
        if self.checksums is not None:
            items["checksums"] = self.checksums
        if self.archive is not None:
            items["zip"] = self.archive
        return items
