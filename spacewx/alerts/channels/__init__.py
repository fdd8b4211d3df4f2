"""
channels — Per-channel delivery backends.

Each gateway exposes an async ``send(...)`` that returns a SendReceipt on
success and raises DeliveryError on failure. Failure isolation and
delivery accounting live in the dispatcher.
"""
