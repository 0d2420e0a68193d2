from prometheus_client import CollectorRegistry, Counter, generate_latest

from pgext.models import Operation


class Metrics:
    """Prometheus metrics of the actuator.

    Each instance owns its registry so that several actuators, eg in tests,
    never share counters.

    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.operation_total = Counter(
            "actuator_operation_total",
            "Total number of operations performed by the actuator",
            ["namespace", "operation"],
            registry=self.registry,
        )

    def inc(self, namespace: str, operation: Operation) -> None:
        self.operation_total.labels(namespace, operation.value).inc()

    def value(self, namespace: str, operation: Operation) -> float:
        """Return the current counter value, mostly for tests."""
        sample = self.registry.get_sample_value(
            "actuator_operation_total",
            {"namespace": namespace, "operation": operation.value},
        )
        return sample or 0.0

    def render(self) -> bytes:
        """Return the metrics in the Prometheus text exposition format."""
        return generate_latest(self.registry)
