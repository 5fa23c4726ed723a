import json
import logging
from typing import Protocol

import httpx

from stockledger.config import settings
from stockledger.schemas.audit import AuditRecord

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("stockledger.audit")


class AuditSink(Protocol):
    def emit(self, record: AuditRecord) -> None: ...


class LoggingAuditSink:
    """Writes each audit record as one JSON line to the audit logger."""

    def emit(self, record: AuditRecord) -> None:
        audit_logger.info(json.dumps(record.model_dump(mode="json"), sort_keys=True))


class WebhookAuditSink:
    """POSTs audit records to every configured receiver URL."""

    def __init__(
        self,
        urls: list[str],
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.urls = urls
        self.timeout = settings.AUDIT_WEBHOOK_TIMEOUT_SECONDS if timeout is None else timeout
        self._transport = transport

    def emit(self, record: AuditRecord) -> None:
        if not self.urls:
            return
        payload = record.model_dump(mode="json")
        failed = []
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            for url in self.urls:
                try:
                    resp = client.post(url, json=payload)
                    resp.raise_for_status()
                except httpx.HTTPError as e:
                    logger.error("Audit webhook failed for %s: %s", url, e)
                    failed.append(url)
        if failed:
            raise RuntimeError(f"Audit webhook delivery failed for {len(failed)} of {len(self.urls)} receivers")


class MultiAuditSink:
    """Fans a record out to several sinks; one failing sink does not starve the others."""

    def __init__(self, sinks: list[AuditSink]):
        self.sinks = sinks

    def emit(self, record: AuditRecord) -> None:
        errors = []
        for sink in self.sinks:
            try:
                sink.emit(record)
            except Exception as e:
                errors.append(e)
        if errors:
            raise errors[0]


def parse_urls(raw: str) -> list[str]:
    return [u.strip() for u in raw.split(",") if u.strip()]


def build_audit_sink() -> AuditSink:
    urls = parse_urls(settings.AUDIT_WEBHOOK_URLS)
    if not urls:
        return LoggingAuditSink()
    return MultiAuditSink([LoggingAuditSink(), WebhookAuditSink(urls)])
