"""CRM-facing integrations."""

from chatbridge.crm.forwarder import InboundForwarder, WebhookForwarder

__all__ = ["InboundForwarder", "WebhookForwarder"]
