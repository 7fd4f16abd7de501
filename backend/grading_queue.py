"""
Grading job queue client.

Production uses AWS SQS (at-least-once delivery). Every failure to reach the
queue surfaces as QueueUnavailableError so grading is never silently dropped.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from constants import AWS_REGION, QUEUE_BATCH_SIZE, QUEUE_WAIT_TIME_SECONDS
from error_utils import QueueUnavailableError

logger = logging.getLogger(__name__)


class QueueClient(ABC):
    """Queue client interface"""

    @abstractmethod
    def send_messages(self, queue_name: str, messages: List[Dict[str, Any]]) -> int:
        """Send every message or raise QueueUnavailableError; returns the number sent"""

    @abstractmethod
    def receive_messages(self, queue_name: str, max_messages: int = 1,
                         wait_time_seconds: int = QUEUE_WAIT_TIME_SECONDS) -> List[Dict[str, Any]]:
        """Receive up to max_messages raw messages (Body, ReceiptHandle, MessageId)"""

    @abstractmethod
    def delete_message(self, queue_name: str, receipt_handle: str) -> bool:
        pass


class SQSQueueClient(QueueClient):
    """AWS SQS backed queue client"""

    def __init__(self, region_name: Optional[str] = None, sqs=None):
        self.region_name = region_name or AWS_REGION
        self.sqs = sqs or boto3.client("sqs", region_name=self.region_name)
        self._queue_urls: Dict[str, str] = {}
        logger.info(f"SQSQueueClient initialized: {self.region_name}")

    def _get_queue_url(self, queue_name: str) -> str:
        if queue_name not in self._queue_urls:
            try:
                response = self.sqs.get_queue_url(QueueName=queue_name)
            except (ClientError, BotoCoreError) as e:
                raise QueueUnavailableError(f"Queue '{queue_name}' unavailable") from e
            self._queue_urls[queue_name] = response["QueueUrl"]
        return self._queue_urls[queue_name]

    def send_messages(self, queue_name: str, messages: List[Dict[str, Any]]) -> int:
        queue_url = self._get_queue_url(queue_name)
        sent = 0
        for start in range(0, len(messages), QUEUE_BATCH_SIZE):
            chunk = messages[start:start + QUEUE_BATCH_SIZE]
            entries = [
                {"Id": str(i), "MessageBody": json.dumps(message)}
                for i, message in enumerate(chunk)
            ]
            try:
                response = self.sqs.send_message_batch(QueueUrl=queue_url, Entries=entries)
            except (ClientError, BotoCoreError) as e:
                logger.error(f"Failed to send {len(chunk)} messages to {queue_name}: {e}")
                raise QueueUnavailableError(f"Could not schedule grading on '{queue_name}'") from e

            failed = response.get("Failed", [])
            if failed:
                logger.error(f"SQS rejected {len(failed)} of {len(chunk)} messages on {queue_name}: {failed}")
                raise QueueUnavailableError(f"Queue '{queue_name}' rejected {len(failed)} grading jobs")
            sent += len(chunk)
        logger.info(f"Sent {sent} messages to {queue_name}")
        return sent

    def receive_messages(self, queue_name: str, max_messages: int = 1,
                         wait_time_seconds: int = QUEUE_WAIT_TIME_SECONDS) -> List[Dict[str, Any]]:
        queue_url = self._get_queue_url(queue_name)
        try:
            response = self.sqs.receive_message(
                QueueUrl=queue_url,
                MaxNumberOfMessages=min(max_messages, QUEUE_BATCH_SIZE),
                WaitTimeSeconds=wait_time_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueUnavailableError(f"Receive from '{queue_name}' failed") from e
        return response.get("Messages", [])

    def delete_message(self, queue_name: str, receipt_handle: str) -> bool:
        try:
            queue_url = self._get_queue_url(queue_name)
            self.sqs.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)
            return True
        except (ClientError, BotoCoreError, QueueUnavailableError) as e:
            logger.error(f"Failed to delete message: {e}")
            return False


def get_queue_client() -> QueueClient:
    return SQSQueueClient()
