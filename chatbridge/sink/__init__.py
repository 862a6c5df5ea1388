"""External status sink for chatbridge."""

from chatbridge.sink.artifact import encode_artifact
from chatbridge.sink.base import LoggingStatusSink, SinkStatus, SinkUpdate, StatusSink
from chatbridge.sink.sqlite import SinkRow, SqliteSinkConfig, SqliteStatusSink

__all__ = [
    "LoggingStatusSink",
    "SinkRow",
    "SinkStatus",
    "SinkUpdate",
    "SqliteSinkConfig",
    "SqliteStatusSink",
    "StatusSink",
    "encode_artifact",
]
