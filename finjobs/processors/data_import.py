"""Bulk row import validation."""

from __future__ import annotations

import csv
import io
from typing import Any, Dict, List

from finjobs.core.errors import PermanentJobError
from finjobs.core.job_queue.core import Job
from finjobs.core.job_queue.processors import JobProcessor


class DataImportProcessor(JobProcessor):
    """Parse ``csv`` text or ``rows`` and validate ``required_columns``.

    Accepted rows are returned for the caller to persist; rejected rows are
    reported with their line number and reason.
    """

    job_type = "data_import"

    def __init__(self, max_rejected_samples: int = 20):
        self.max_rejected_samples = max_rejected_samples

    async def execute(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        if "csv" in payload:
            rows: List[Dict[str, Any]] = list(csv.DictReader(io.StringIO(payload["csv"])))
        elif isinstance(payload.get("rows"), list):
            rows = payload["rows"]
        else:
            raise PermanentJobError("data_import needs 'csv' text or a 'rows' list")

        required = list(payload.get("required_columns") or [])
        numeric = set(payload.get("numeric_columns") or [])
        accepted: List[Dict[str, Any]] = []
        rejected: List[Dict[str, Any]] = []
        for line, row in enumerate(rows, start=1):
            if not isinstance(row, dict):
                rejected.append({"line": line, "reason": "not a mapping"})
                continue
            missing = [c for c in required if row.get(c) in (None, "")]
            if missing:
                rejected.append({"line": line, "reason": f"missing {', '.join(missing)}"})
                continue
            try:
                accepted.append({k: float(v) if k in numeric else v for k, v in row.items()})
            except (TypeError, ValueError):
                rejected.append({"line": line, "reason": "non-numeric value"})

        return {
            "table": payload.get("table"),
            "imported_records": len(accepted),
            "rejected_records": len(rejected),
            "rejected": rejected[: self.max_rejected_samples],
            "records": accepted,
        }
