"""External collaborator capabilities"""

# Event Bus
from .event_bus import EventBus, Event

# Agent invocation
from .agent import AgentInvoker, MockAgentInvoker

# Data connectors
from .connectors import DataConnector, InMemoryDataConnector, HttpDataConnector

# Notifications
from .notifications import Notification, NotificationChannel, InMemoryNotificationChannel

# Approvals
from .approval import ApprovalGateway, InMemoryApprovalGateway, ApprovalRequest, ApprovalDecision

# Reference registry
from .references import ReferenceRegistry, ReferenceKind, AgentProfile, ConnectorDefinition

# Validators
from .validators import SchemaValidator

__all__ = [
    # Event Bus
    "EventBus",
    "Event",
    # Agent invocation
    "AgentInvoker",
    "MockAgentInvoker",
    # Data connectors
    "DataConnector",
    "InMemoryDataConnector",
    "HttpDataConnector",
    # Notifications
    "Notification",
    "NotificationChannel",
    "InMemoryNotificationChannel",
    # Approvals
    "ApprovalGateway",
    "InMemoryApprovalGateway",
    "ApprovalRequest",
    "ApprovalDecision",
    # Reference registry
    "ReferenceRegistry",
    "ReferenceKind",
    "AgentProfile",
    "ConnectorDefinition",
    # Validators
    "SchemaValidator",
]
