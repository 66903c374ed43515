"""Approval gate channels."""

from ..core.registry import ComponentRegistry
from .channels import (
    ApprovalChannel,
    ConsoleApprovalChannel,
    QueueApprovalChannel,
    StaticApprovalChannel,
)

approval_registry: ComponentRegistry[ApprovalChannel] = ComponentRegistry(ApprovalChannel)
approval_registry.register_component("console", ConsoleApprovalChannel)
approval_registry.register_component("static", StaticApprovalChannel)
approval_registry.register_component("queue", QueueApprovalChannel)

__all__ = [
    "ApprovalChannel",
    "ConsoleApprovalChannel",
    "QueueApprovalChannel",
    "StaticApprovalChannel",
    "approval_registry",
]
