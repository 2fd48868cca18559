"""
channels — Per-channel delivery backends.

Each channel exposes a ChannelSender:
    await sender.deliver(recipient, message, subject=None) → receipt dict

Senders enforce their own timeout and raise DeliveryError on failure.
Retry logic lives in the job queue; senders never retry.
"""
