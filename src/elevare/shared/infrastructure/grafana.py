"""
Grafana OTLP Metrics Exporter
==============================

Pushes escalation sweep metrics to Grafana Cloud via OTLP/HTTP.

Metrics exported per sweep (gauges):
- escalation_sweep_duration_ms
- escalation_sweep_rules_evaluated
- escalation_sweep_entities_scanned
- escalation_sweep_matches
- escalation_sweep_events_created
- escalation_sweep_duplicates_skipped
- escalation_sweep_failures
"""

import base64
import time
from typing import Optional, Dict, List, Any, Union

import httpx

from elevare.config import settings
from elevare.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

Number = Union[int, float]

_METRIC_UNITS = {
    "duration_ms": "ms",
}


class GrafanaOTLPExporter:
    """
    Export sweep metrics to Grafana Cloud via OTLP HTTP endpoint.

    Disabled (every export returns False) unless host, api key and
    instance id are all configured.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None,
        timeout: float = 10.0
    ):
        self._host = host or settings.grafana_host
        self._api_key = api_key or settings.grafana_api_key
        self._instance_id = instance_id or settings.grafana_instance_id
        self._timeout = timeout
        self._enabled = bool(self._host and self._api_key and self._instance_id)

        if self._enabled:
            auth_pair = f"{self._instance_id}:{self._api_key}"
            self._auth_encoded = base64.b64encode(auth_pair.encode()).decode()
            # Don't double-append the path if host already includes it
            if "/otlp/v1/metrics" not in self._host:
                self._url = f"{self._host.rstrip('/')}/otlp/v1/metrics"
            else:
                self._url = self._host
            logger.info(
                "Grafana OTLP exporter initialized",
                extra={"host": self._host, "instance_id": self._instance_id}
            )
        else:
            logger.info("Grafana OTLP exporter not configured - metrics will not be exported")

    def is_enabled(self) -> bool:
        """Check if exporter is properly configured."""
        return self._enabled

    @staticmethod
    def _attributes(values: Dict[str, Any]) -> List[dict]:
        return [
            {"key": key, "value": {"stringValue": str(value)}}
            for key, value in values.items()
        ]

    def build_payload(
        self,
        metrics: Dict[str, Number],
        attributes: Optional[Dict[str, str]] = None,
        prefix: str = "escalation_sweep_"
    ) -> dict:
        """Build an OTLP JSON payload with one gauge per metric."""
        timestamp_ns = int(time.time() * 1_000_000_000)
        point_attributes = self._attributes({"service": settings.app_name, **(attributes or {})})

        gauges = []
        for name, value in metrics.items():
            point = {"timeUnixNano": timestamp_ns, "attributes": point_attributes}
            if isinstance(value, float):
                point["asDouble"] = value
            else:
                point["asInt"] = int(value)
            gauges.append({
                "name": f"{prefix}{name}",
                "unit": _METRIC_UNITS.get(name, "1"),
                "gauge": {"dataPoints": [point]},
            })

        return {
            "resourceMetrics": [
                {
                    "resource": {
                        "attributes": self._attributes({
                            "service.name": settings.app_name,
                            "service.version": settings.app_version,
                            "deployment.environment": settings.environment,
                        })
                    },
                    "scopeMetrics": [{"metrics": gauges}]
                }
            ]
        }

    async def export_sweep_metrics(
        self,
        metrics: Dict[str, Number],
        attributes: Optional[Dict[str, str]] = None
    ) -> bool:
        """
        Export one sweep's counters.

        Args:
            metrics: Metric name (without prefix) to value
            attributes: Extra attributes, e.g. sweep status

        Returns:
            True if export succeeded, False otherwise
        """
        if not self._enabled:
            return False

        payload = self.build_payload(metrics, attributes)
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self._auth_encoded}",
            "X-Grafana-Org-Id": str(self._instance_id)
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error("Error exporting sweep metrics to Grafana", extra={"error": str(e)})
            return False

        if response.status_code in (200, 202):
            logger.debug("Sweep metrics exported to Grafana", extra={"metrics_count": len(metrics)})
            return True

        logger.warning(
            "Failed to export metrics to Grafana",
            extra={
                "status_code": response.status_code,
                "response": response.text[:500],
                "url": self._url
            }
        )
        return False


# Global exporter instance
_grafana_exporter: Optional[GrafanaOTLPExporter] = None


def get_grafana_exporter() -> Optional[GrafanaOTLPExporter]:
    """Get or create global Grafana exporter instance."""
    global _grafana_exporter
    if _grafana_exporter is None:
        _grafana_exporter = GrafanaOTLPExporter()
    return _grafana_exporter

