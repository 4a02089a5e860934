#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Thin client for the durable work queue that links selector and dispatcher.

The queue is an SQS queue. Delivery is at-least-once: a received message stays
invisible for the queue's visibility timeout and reappears if it is not
deleted. Nothing in this package deletes messages. That is done by the
automation that processes them, using the receipt handle passed to it.
"""

import logging

import boto3

LOG = logging.getLogger(__name__)

SEND_BATCH_MAX = 10
"""Largest number of entries accepted by a single batch send."""

RECEIVE_MAX = 10
"""Largest number of messages returned by a single receive."""


class WorkQueue:
    """Sends and receives messages on a single queue."""

    def __init__(self, queue_url, client=None):
        self.queue_url = queue_url
        self._client = client or boto3.client("sqs")

    def send_batch(self, entries):
        """Sends up to `SEND_BATCH_MAX` entries and returns the failed ones.

        Each entry is a dict with an `Id` unique within the batch and a
        `MessageBody`. The returned list holds the `Failed` entries of the
        response, each naming the `Id` that could not be sent.
        """
        if not 0 < len(entries) <= SEND_BATCH_MAX:
            raise ValueError(f"A batch must hold between 1 and {SEND_BATCH_MAX} entries")

        resp = self._client.send_message_batch(QueueUrl=self.queue_url, Entries=entries)
        failed = resp.get("Failed") or []
        LOG.debug("sent batch of %d, %d failed", len(entries), len(failed))
        return failed

    def receive(self, max_messages=RECEIVE_MAX):
        """Receives at most `max_messages` messages with a single call.

        The queue may return fewer messages than requested, or none at all.
        """
        if not 1 <= max_messages <= RECEIVE_MAX:
            raise ValueError(f"max_messages must be between 1 and {RECEIVE_MAX}")

        resp = self._client.receive_message(
            QueueUrl=self.queue_url, MaxNumberOfMessages=max_messages
        )
        messages = resp.get("Messages") or []
        LOG.info("received %d message(s) from %s", len(messages), self.queue_url)
        return messages
