"""
Usage log: one append-only row per billable or limited request.

A row is created before the upstream call and completed afterwards, so
failed attempts are recorded with their status and error text.
"""
import time
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from perf_hub_server.db_models import Tenant, UsageRecord


def record_usage(
    db: Session,
    tenant: Tenant,
    endpoint: str,
    category: str,
    client_ip: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> UsageRecord:
    record = UsageRecord(
        tenant_id=tenant.id,
        endpoint=endpoint,
        category=category,
        request_ip=client_ip,
        metadata_json=metadata,
    )
    record.started = time.monotonic()
    db.add(record)
    db.commit()
    return record


def finish_usage(
    db: Session,
    record: UsageRecord,
    status_code: int,
    input_tokens: int = 0,
    output_tokens: int = 0,
    cost_usd: float = 0.0,
    error: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> UsageRecord:
    """Fill in the outcome columns of a usage row and commit."""
    record.status_code = status_code
    record.input_tokens = input_tokens
    record.output_tokens = output_tokens
    record.tokens_used = input_tokens + output_tokens
    record.cost_usd = cost_usd
    record.error_message = error
    started = getattr(record, "started", None)
    if started is not None:
        record.response_time_ms = int((time.monotonic() - started) * 1000)
    if metadata:
        record.metadata_json = {**(record.metadata_json or {}), **metadata}
    db.commit()
    return record
