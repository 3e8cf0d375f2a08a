"""
File-backed campaign store.

One JSON document per campaign holding generated fields and per-field
generation errors. Used by the CLI as the campaign record a run writes into.
"""

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CAMPAIGNS_DIR = "campaigns"

_CAMPAIGN_REF_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

# Objects every campaign record must carry.
_DOCUMENT_SECTIONS = ("settings", "fields", "errors")


class CampaignUnavailableError(Exception):
    """The campaign record cannot be read or written (e.g. deleted mid-run)."""

    def __init__(self, campaign_ref: str, reason: str):
        super().__init__(f"Campaign '{campaign_ref}' is unavailable: {reason}")
        self.campaign_ref = campaign_ref
        self.reason = reason


class FileCampaignStore:
    """Campaign records stored as ``<campaigns_dir>/<campaign_ref>.json``."""

    def __init__(self, campaigns_dir: str = DEFAULT_CAMPAIGNS_DIR):
        self.campaigns_dir = Path(campaigns_dir)

    def path_for(self, campaign_ref: str) -> Path:
        if not _CAMPAIGN_REF_RE.match(campaign_ref or ""):
            raise ValueError(f"Invalid campaign reference: {campaign_ref!r}")
        return self.campaigns_dir / f"{campaign_ref}.json"

    def exists(self, campaign_ref: str) -> bool:
        return self.path_for(campaign_ref).exists()

    def create(self, campaign_ref: str, settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Create an empty campaign record.

        An existing record keeps its generated fields; only its settings
        are replaced.
        """
        if self.exists(campaign_ref):
            document = self.load(campaign_ref)
            document["settings"] = dict(settings or {})
            self._save(campaign_ref, document)
            return document
        document = {
            "campaign_ref": campaign_ref,
            "settings": dict(settings or {}),
            "fields": {},
            "errors": {},
            "created_at": _now(),
            "updated_at": _now(),
        }
        self.campaigns_dir.mkdir(parents=True, exist_ok=True)
        self._write(campaign_ref, document)
        return document

    def load(self, campaign_ref: str) -> Dict[str, Any]:
        """Read a campaign record.

        Raises:
            CampaignUnavailableError: If the record is missing or unreadable
        """
        path = self.path_for(campaign_ref)
        try:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except FileNotFoundError as e:
            raise CampaignUnavailableError(campaign_ref, "campaign not found") from e
        except (OSError, json.JSONDecodeError) as e:
            raise CampaignUnavailableError(campaign_ref, str(e)) from e

        if not isinstance(document, dict):
            raise CampaignUnavailableError(campaign_ref, "campaign record must be a JSON object")
        for section in _DOCUMENT_SECTIONS:
            if not isinstance(document.get(section), dict):
                raise CampaignUnavailableError(campaign_ref, f"campaign record has no '{section}' object")
        return document

    def delete(self, campaign_ref: str) -> None:
        self.path_for(campaign_ref).unlink(missing_ok=True)

    def write_generated_field(self, campaign_ref: str, task_key: str, value: Any) -> None:
        """Store a generated field and clear any earlier error for it."""
        document = self.load(campaign_ref)
        document["fields"][task_key] = value
        document["errors"].pop(task_key, None)
        self._save(campaign_ref, document)

    def mark_generation_error(self, campaign_ref: str, task_key: str, error_summary: str) -> None:
        """Record why a field could not be generated."""
        document = self.load(campaign_ref)
        document["errors"][task_key] = error_summary
        self._save(campaign_ref, document)

    def _save(self, campaign_ref: str, document: Dict[str, Any]) -> None:
        document["updated_at"] = _now()
        self._write(campaign_ref, document)

    def _write(self, campaign_ref: str, document: Dict[str, Any]) -> None:
        path = self.path_for(campaign_ref)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
        except OSError as e:
            raise CampaignUnavailableError(campaign_ref, str(e)) from e
        logger.debug("Saved campaign %s", campaign_ref)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
