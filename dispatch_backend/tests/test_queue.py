import unittest
from unittest.mock import MagicMock, patch

from redis import exceptions as redis_exceptions

from dispatch_backend.queue import InMemoryJobQueue, RedisJobQueue


class InMemoryJobQueueTests(unittest.TestCase):
    def test_fifo_and_dead_letters(self):
        queue = InMemoryJobQueue()
        queue.enqueue("job-1")
        queue.enqueue("job-2")
        queue.dead_letter("job-0")

        self.assertEqual(queue.dequeue(block=False), "job-1")
        self.assertEqual(queue.dequeue(block=False), "job-2")
        self.assertIsNone(queue.dequeue(block=False))
        self.assertEqual(queue.dead_letters, ["job-0"])


@patch("dispatch_backend.queue.redis.Redis.from_url")
class RedisJobQueueTests(unittest.TestCase):
    def test_enqueue_and_blocking_dequeue(self, mock_from_url):
        client = MagicMock()
        client.blpop.return_value = (b"dispatch:notifications", b"job-1")
        mock_from_url.return_value = client
        queue = RedisJobQueue(url="redis://localhost:6379/0")

        queue.enqueue("job-1")
        job_id = queue.dequeue(block=True, timeout=2)

        client.rpush.assert_called_once_with("dispatch:notifications", "job-1")
        client.blpop.assert_called_once_with("dispatch:notifications", timeout=2)
        self.assertEqual(job_id, "job-1")

    def test_dead_letter_uses_sibling_key(self, mock_from_url):
        client = MagicMock()
        mock_from_url.return_value = client
        queue = RedisJobQueue(url="redis://localhost:6379/0", queue_key="dispatch:test")

        queue.dead_letter("job-9")

        client.rpush.assert_called_once_with("dispatch:test:dead", "job-9")

    def test_connection_loss_reconnects_and_reports_empty(self, mock_from_url):
        broken = MagicMock()
        broken.lpop.side_effect = redis_exceptions.ConnectionError("reset by peer")
        fresh = MagicMock()
        mock_from_url.side_effect = [broken, fresh]
        queue = RedisJobQueue(url="redis://localhost:6379/0")

        self.assertIsNone(queue.dequeue(block=False))
        self.assertIs(queue.client, fresh)


if __name__ == "__main__":
    unittest.main()
