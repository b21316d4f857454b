"""
Tests for the job queue adapters and the polling consumer.
"""

import json

import boto3
import pytest
from botocore.stub import Stubber

from conftest import queue_message
from mkpdfs_backend.errors import QueueError
from mkpdfs_backend.job_queue import (
    InMemoryJobQueue,
    QueueConsumer,
    ReceivedMessage,
    SqsJobQueue,
    create_queue_pair,
    handle_sqs_event,
)
from mkpdfs_backend.models import QueueMessage

QUEUE_URL = "https://sqs.us-east-1.amazonaws.com/123456789012/mkpdfs-test-pdf-generation"


@pytest.fixture
def sqs_client():
    return boto3.client(
        "sqs",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


class TestQueueMessage:
    def test_json_uses_camel_case_fields(self):
        message = queue_message("job-9", send_email=["ops@example.com"], page_count=4)

        body = json.loads(message.to_json())

        assert body == {
            "jobId": "job-9",
            "userId": "user-1",
            "templateId": "invoice-v2",
            "data": {"customer": "Acme"},
            "sendEmail": ["ops@example.com"],
            "pageCount": 4,
        }
        assert QueueMessage.from_json(message.to_json()) == message

    def test_optional_send_email_is_omitted(self):
        assert "sendEmail" not in json.loads(queue_message().to_json())


class TestInMemoryJobQueue:
    def test_message_is_hidden_while_in_flight(self, queue, clock):
        queue.send(queue_message())

        assert len(queue.receive(1)) == 1
        assert queue.receive(1) == []

        clock.advance(361)
        redelivered = queue.receive(1)
        assert len(redelivered) == 1
        assert redelivered[0].receive_count == 2

    def test_ack_removes_message(self, queue, clock):
        queue.send(queue_message())
        received = queue.receive(1)[0]

        queue.ack(received)
        clock.advance(361)

        assert queue.receive(1) == []
        assert len(queue) == 0

    def test_batch_size_limits_messages_per_receive(self, queue):
        for index in range(3):
            queue.send(queue_message(f"job-{index}"))

        assert [r.message.job_id for r in queue.receive(1)] == ["job-0"]
        assert [r.message.job_id for r in queue.receive(5)] == ["job-1", "job-2"]

    def test_dead_letters_after_max_receive_count(self, clock):
        queue = InMemoryJobQueue(visibility_timeout=10, max_receive_count=3, clock=clock)
        queue.send(queue_message("job-dlq"))

        for _ in range(3):
            assert len(queue.receive(1)) == 1
            clock.advance(11)

        assert queue.receive(1) == []
        assert [m.job_id for m in queue.dead_letters] == ["job-dlq"]


class TestQueueConsumer:
    def test_successful_handler_acknowledges(self, queue):
        handled = []
        queue.send(queue_message())
        consumer = QueueConsumer(queue, handled.append, wait_seconds=0)

        assert consumer.poll_once() == 1
        assert [m.job_id for m in handled] == ["job-1"]
        assert len(queue) == 0

    def test_failing_handler_leaves_message(self, queue):
        def handler(message):
            raise RuntimeError("render crashed")

        queue.send(queue_message())
        consumer = QueueConsumer(queue, handler, wait_seconds=0)

        assert consumer.poll_once() == 1
        assert len(queue) == 1

    def test_processes_one_message_per_poll_by_default(self, queue):
        handled = []
        for index in range(2):
            queue.send(queue_message(f"job-{index}"))
        consumer = QueueConsumer(queue, handled.append, wait_seconds=0)

        consumer.poll_once()

        assert len(handled) == 1
        assert len(queue) == 1

    def test_rejects_empty_batches(self, queue):
        with pytest.raises(ValueError):
            QueueConsumer(queue, print, batch_size=0)


class TestSqsEvent:
    def test_records_are_handled_in_order(self):
        handled = []
        event = {"Records": [{"body": queue_message("a").to_json()}, {"body": queue_message("b").to_json()}]}

        handle_sqs_event(event, handled.append)

        assert [m.job_id for m in handled] == ["a", "b"]

    def test_handler_failure_propagates(self):
        def handler(message):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            handle_sqs_event({"Records": [{"body": queue_message().to_json()}]}, handler)


class TestSqsJobQueue:
    def test_send_posts_json_body(self, sqs_client):
        message = queue_message()
        with Stubber(sqs_client) as stubber:
            stubber.add_response(
                "send_message",
                {"MessageId": "msg-1"},
                {"QueueUrl": QUEUE_URL, "MessageBody": message.to_json()},
            )

            assert SqsJobQueue(QUEUE_URL, client=sqs_client).send(message) == "msg-1"
            stubber.assert_no_pending_responses()

    def test_send_failure_raises_queue_error(self, sqs_client):
        with Stubber(sqs_client) as stubber:
            stubber.add_client_error("send_message", service_error_code="AWS.SimpleQueueService.NonExistentQueue")

            with pytest.raises(QueueError):
                SqsJobQueue(QUEUE_URL, client=sqs_client).send(queue_message())

    def test_receive_and_ack(self, sqs_client):
        message = queue_message()
        with Stubber(sqs_client) as stubber:
            stubber.add_response(
                "receive_message",
                {
                    "Messages": [
                        {
                            "MessageId": "msg-1",
                            "ReceiptHandle": "receipt-1",
                            "Body": message.to_json(),
                            "Attributes": {"ApproximateReceiveCount": "2"},
                        }
                    ]
                },
                {
                    "QueueUrl": QUEUE_URL,
                    "MaxNumberOfMessages": 1,
                    "WaitTimeSeconds": 20,
                    "VisibilityTimeout": 360,
                    "AttributeNames": ["ApproximateReceiveCount"],
                },
            )
            stubber.add_response("delete_message", {}, {"QueueUrl": QUEUE_URL, "ReceiptHandle": "receipt-1"})

            queue = SqsJobQueue(QUEUE_URL, client=sqs_client)
            received = queue.receive(1, 20)
            assert received == [ReceivedMessage(message=message, receipt="receipt-1", receive_count=2)]

            queue.ack(received[0])
            stubber.assert_no_pending_responses()

    def test_malformed_messages_are_skipped(self, sqs_client):
        with Stubber(sqs_client) as stubber:
            stubber.add_response(
                "receive_message",
                {"Messages": [{"MessageId": "msg-1", "ReceiptHandle": "receipt-1", "Body": "{not json"}]},
            )

            assert SqsJobQueue(QUEUE_URL, client=sqs_client).receive(1, 0) == []

    def test_requires_queue_url(self, sqs_client):
        with pytest.raises(QueueError):
            SqsJobQueue("", client=sqs_client)

    def test_create_queue_pair_sets_redrive_policy(self, sqs_client):
        dlq_url = QUEUE_URL + "-dlq"
        dlq_arn = "arn:aws:sqs:us-east-1:123456789012:mkpdfs-test-pdf-generation-dlq"
        with Stubber(sqs_client) as stubber:
            stubber.add_response(
                "create_queue",
                {"QueueUrl": dlq_url},
                {"QueueName": "mkpdfs-test-pdf-generation-dlq", "Attributes": {"MessageRetentionPeriod": "1209600"}},
            )
            stubber.add_response(
                "get_queue_attributes",
                {"Attributes": {"QueueArn": dlq_arn}},
                {"QueueUrl": dlq_url, "AttributeNames": ["QueueArn"]},
            )
            stubber.add_response(
                "create_queue",
                {"QueueUrl": QUEUE_URL},
                {
                    "QueueName": "mkpdfs-test-pdf-generation",
                    "Attributes": {
                        "VisibilityTimeout": "360",
                        "MessageRetentionPeriod": "345600",
                        "ReceiveMessageWaitTimeSeconds": "20",
                        "RedrivePolicy": json.dumps({"deadLetterTargetArn": dlq_arn, "maxReceiveCount": "3"}),
                    },
                },
            )

            assert create_queue_pair(sqs_client, "mkpdfs-test-pdf-generation") == (QUEUE_URL, dlq_url)
            stubber.assert_no_pending_responses()
