"""OpenTelemetry metrics for the certificate lifecycle."""

from opentelemetry import metrics

meter = metrics.get_meter("certflow")

authorities_created_total = meter.create_counter(
    name="certflow_authorities_created_total",
    description="Total CAs bootstrapped",
    unit="1",
)

authority_loads_total = meter.create_counter(
    name="certflow_authority_loads_total",
    description="CA load attempts by result",
    unit="1",
)

certificates_signed_total = meter.create_counter(
    name="certflow_certificates_signed_total",
    description="Total certificates signed by type",
    unit="1",
)

certificate_signing_duration = meter.create_histogram(
    name="certflow_certificate_signing_duration_seconds",
    description="Certificate signing duration in seconds",
    unit="s",
)

certificates_persisted_total = meter.create_counter(
    name="certflow_certificates_persisted_total",
    description="Total certificates saved to the repository",
    unit="1",
)

save_conflicts_total = meter.create_counter(
    name="certflow_save_conflicts_total",
    description="Persistence attempts rejected because a record already exists",
    unit="1",
)

certificates_revoked_total = meter.create_counter(
    name="certflow_certificates_revoked_total",
    description="Total certificates revoked",
    unit="1",
)

crls_generated_total = meter.create_counter(
    name="certflow_crls_generated_total",
    description="Total CRLs generated",
    unit="1",
)

crl_entries = meter.create_histogram(
    name="certflow_crl_entries",
    description="Number of revoked certificates listed per generated CRL",
    unit="1",
)


class CAMetrics:
    """Facade for certificate lifecycle metrics with proper labels."""

    def record_authority_created(self, key_length: int) -> None:
        authorities_created_total.add(1, {"key_length": str(key_length)})

    def record_authority_load(self, result: str) -> None:
        """Labels: result=ok|not_found|wrong_passphrase|mismatch"""
        authority_loads_total.add(1, {"result": result})

    def record_certificate_signed(self, cert_type: str, duration_seconds: float) -> None:
        certificates_signed_total.add(1, {"type": cert_type})
        certificate_signing_duration.record(duration_seconds)

    def record_certificate_persisted(self, overwrite: bool) -> None:
        certificates_persisted_total.add(1, {"overwrite": str(overwrite).lower()})

    def record_save_conflict(self) -> None:
        save_conflicts_total.add(1)

    def record_certificate_revoked(self, reason: str) -> None:
        certificates_revoked_total.add(1, {"reason": reason})

    def record_crl_generated(self, entry_count: int) -> None:
        crls_generated_total.add(1)
        crl_entries.record(entry_count)


# Singleton instance
ca_metrics = CAMetrics()
