"""OpenTelemetry metrics for the trust bootstrap."""

from collections.abc import Iterator

from opentelemetry import metrics

meter = metrics.get_meter("trustboot")

bootstrap_steps_total = meter.create_counter(
    name="trustboot_bootstrap_steps_total",
    description="Bootstrap steps executed, by role, step and outcome",
    unit="1",
)

bootstrap_step_duration = meter.create_histogram(
    name="trustboot_bootstrap_step_duration_seconds",
    description="Bootstrap step duration in seconds",
    unit="s",
)

poll_attempts_total = meter.create_counter(
    name="trustboot_exchange_poll_attempts_total",
    description="Exchange channel checks for an artifact",
    unit="1",
)

artifact_wait_duration = meter.create_histogram(
    name="trustboot_exchange_wait_duration_seconds",
    description="Time spent waiting for an exchange artifact",
    unit="s",
)

artifacts_published_total = meter.create_counter(
    name="trustboot_exchange_artifacts_published_total",
    description="Artifacts published to the exchange channel",
    unit="1",
)

certificates_generated_total = meter.create_counter(
    name="trustboot_certificates_generated_total",
    description="Certificates generated, by kind",
    unit="1",
)

requests_signed_total = meter.create_counter(
    name="trustboot_requests_signed_total",
    description="Client certificate requests signed",
    unit="1",
)

validations_total = meter.create_counter(
    name="trustboot_validations_total",
    description="Store validations, by role and result",
    unit="1",
)


class TrustbootMetrics:
    """Facade for bootstrap metrics with proper labels."""

    def __init__(self) -> None:
        self._validated_roles: set[str] = set()
        meter.create_observable_gauge(
            name="trustboot_bootstrap_completed",
            description="Bootstrap reached the validated state (1=yes, 0=no)",
            unit="1",
            callbacks=[self._observe_completed],
        )

    def _observe_completed(self, options: metrics.CallbackOptions) -> Iterator[metrics.Observation]:
        for role in ("authority", "inheritor", "leaf"):
            yield metrics.Observation(1 if role in self._validated_roles else 0, {"role": role})

    def record_step(self, role: str, step: str, outcome: str, duration_seconds: float) -> None:
        """Labels: outcome=ok|<error kind>"""
        bootstrap_steps_total.add(1, {"role": role, "step": step, "outcome": outcome})
        bootstrap_step_duration.record(duration_seconds, {"role": role, "step": step})

    def record_poll_attempt(self, artifact: str) -> None:
        poll_attempts_total.add(1, {"artifact": artifact})

    def record_artifact_wait(self, artifact: str, result: str, duration_seconds: float) -> None:
        """Labels: result=ready|timedout|cancelled"""
        artifact_wait_duration.record(duration_seconds, {"artifact": artifact, "result": result})

    def record_artifact_published(self, artifact: str) -> None:
        artifacts_published_total.add(1, {"artifact": artifact})

    def record_certificate_generated(self, kind: str) -> None:
        """Labels: kind=ca|own|issued"""
        certificates_generated_total.add(1, {"kind": kind})

    def record_request_signed(self) -> None:
        requests_signed_total.add(1)

    def record_validation(self, role: str, passed: bool) -> None:
        validations_total.add(1, {"role": role, "result": "pass" if passed else "fail"})
        if passed:
            self._validated_roles.add(role)

    def is_completed(self, role: str) -> bool:
        return role in self._validated_roles


# Singleton instance
trustboot_metrics = TrustbootMetrics()
