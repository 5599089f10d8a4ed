"""ACM-backed certificate client."""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

import boto3
from botocore.exceptions import ClientError
from loguru import logger

from src.infra.clients import CertificateInfo, CertificateStatus, ValidationRecord

# ACM accepts at most 32 word characters.
_TOKEN_MAX_LENGTH = 32


def sanitize_idempotency_token(token: str) -> str:
    return re.sub(r"\W", "", token)[:_TOKEN_MAX_LENGTH] or "kubeship"


def parse_certificate(raw: dict[str, Any]) -> CertificateInfo:
    records = []
    for option in raw.get("DomainValidationOptions", []):
        resource = option.get("ResourceRecord")
        if resource:
            records.append(
                ValidationRecord(
                    name=resource["Name"].rstrip("."),
                    type=resource["Type"],
                    value=resource["Value"].rstrip("."),
                )
            )
    return CertificateInfo(
        arn=raw["CertificateArn"],
        domain=raw.get("DomainName", ""),
        status=raw.get("Status", ""),
        validation_records=records,
        failure_reason=raw.get("FailureReason", ""),
    )


class AcmCertificateClient:
    """Request and inspect DNS-validated certificates.

    Args:
        session: boto3 session built from the deployment credentials
        region: Region the load balancer lives in (certificates are regional)
    """

    def __init__(self, session: boto3.Session, region: str) -> None:
        self._acm = session.client("acm", region_name=region)

    def request_certificate(
        self,
        domain: str,
        *,
        alternative_names: Sequence[str] = (),
        idempotency_token: str | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "DomainName": domain,
            "ValidationMethod": "DNS",
            "SubjectAlternativeNames": [domain, *alternative_names],
        }
        if idempotency_token:
            kwargs["IdempotencyToken"] = sanitize_idempotency_token(idempotency_token)
        arn = self._acm.request_certificate(**kwargs)["CertificateArn"]
        logger.info(f"Requested certificate for {domain}: {arn}")
        return arn

    def describe_certificate(self, arn: str) -> CertificateInfo | None:
        try:
            response = self._acm.describe_certificate(CertificateArn=arn)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                return None
            raise
        return parse_certificate(response["Certificate"])

    def list_certificates(self) -> list[CertificateInfo]:
        certificates = []
        paginator = self._acm.get_paginator("list_certificates")
        statuses = [status.value for status in CertificateStatus]
        for page in paginator.paginate(CertificateStatuses=statuses):
            for summary in page.get("CertificateSummaryList", []):
                certificates.append(
                    CertificateInfo(
                        arn=summary["CertificateArn"],
                        domain=summary.get("DomainName", ""),
                        status=summary.get("Status", ""),
                    )
                )
        return certificates
