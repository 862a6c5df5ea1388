"""chatbridge - bridges messaging-network sessions to a CRM conversation API."""

__version__ = "0.1.0"
