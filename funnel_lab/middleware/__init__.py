from funnel_lab.middleware.telemetry import TelemetryMiddleware

__all__ = ["TelemetryMiddleware"]
