"""
Console output capture and fan-out.

Splits raw backend output into lines, classifies them, and delivers them to
any number of independently cancellable subscribers.
"""

from .broadcast import (
    LogBroadcast,
    SubscriberOverflowError,
    Subscription,
    SubscriptionError,
)
from .capture import CaptureSession, ExitMessage, OutputMessage, StartupMessage
from .classifier import NullClassifier, StatusClassifier, SubstringClassifier
from .lines import LineSplitter, merge_streams, read_lines

__all__ = [
    "CaptureSession",
    "ExitMessage",
    "LineSplitter",
    "LogBroadcast",
    "NullClassifier",
    "OutputMessage",
    "StartupMessage",
    "StatusClassifier",
    "SubscriberOverflowError",
    "Subscription",
    "SubscriptionError",
    "SubstringClassifier",
    "merge_streams",
    "read_lines",
]
