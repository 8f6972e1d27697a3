import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "crm-agent",
    environment: Optional[str] = None
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=environment or os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    context = structlog.contextvars.get_contextvars()
    for key in ("request_id", "conversation_id", "organization_id"):
        if context.get(key) and key not in event_dict:
            event_dict[key] = context[key]

    return event_dict


class AgentLogger:
    """Specialized logger for agent operations"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_agent_event(
        self,
        event_type: str,
        agent_name: str,
        conversation_id: Optional[str],
        data: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        """Log agent-specific events"""

        self.logger.info(
            "agent_event",
            event_type=event_type,
            agent_name=agent_name,
            conversation_id=conversation_id,
            data=data or {},
            **kwargs
        )

    def log_tool_execution(
        self,
        tool_name: str,
        conversation_id: Optional[str],
        outcome_type: str,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log tool execution events; arguments and payloads are never logged"""

        self.logger.info(
            "tool_execution",
            tool_name=tool_name,
            conversation_id=conversation_id,
            outcome_type=outcome_type,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_handoff(
        self,
        conversation_id: Optional[str],
        target_agent: str,
        reason: str,
        is_fallback: bool = False
    ):
        """Log a triage routing decision"""

        log = self.logger.warning if is_fallback else self.logger.info
        log(
            "triage_fallback" if is_fallback else "handoff",
            conversation_id=conversation_id,
            target_agent=target_agent,
            reason=reason,
            is_fallback=is_fallback
        )

    def log_approval_transition(
        self,
        approval_id: str,
        action: str,
        from_status: str,
        to_status: str,
        actor_id: str
    ):
        """Log approval state machine transitions"""

        self.logger.info(
            "approval_transition",
            approval_id=approval_id,
            action=action,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id
        )


# Global logger instance
agent_logger = AgentLogger("agent")


class MetricsCollector:
    """Collect and export metrics"""

    def __init__(self):
        self.metrics: Dict[str, Any] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record operation latency"""

        key = f"latency.{operation}"
        if key not in self.metrics:
            self.metrics[key] = {
                "count": 0,
                "sum": 0,
                "min": float('inf'),
                "max": 0
            }

        self.metrics[key]["count"] += 1
        self.metrics[key]["sum"] += duration_ms
        self.metrics[key]["min"] = min(self.metrics[key]["min"], duration_ms)
        self.metrics[key]["max"] = max(self.metrics[key]["max"], duration_ms)

        agent_logger.logger.debug(
            "metric",
            metric_type="latency",
            operation=operation,
            duration_ms=duration_ms,
            tags=tags or {}
        )

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric"""

        if name not in self.metrics:
            self.metrics[name] = 0
        self.metrics[name] += value

        agent_logger.logger.info(
            "metric",
            metric_type="counter",
            name=name,
            value=value,
            tags=tags or {}
        )

    def get_counter(self, name: str) -> int:
        value = self.metrics.get(name, 0)
        return value if isinstance(value, int) else 0

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics"""

        summary = {}
        for key, value in self.metrics.items():
            if isinstance(value, dict) and "count" in value:
                # Latency metric
                summary[key] = {
                    "count": value["count"],
                    "avg": value["sum"] / value["count"] if value["count"] > 0 else 0,
                    "min": value["min"] if value["min"] != float('inf') else 0,
                    "max": value["max"]
                }
            else:
                summary[key] = value

        return summary


# Global metrics collector
metrics = MetricsCollector()
