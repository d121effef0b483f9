import json
import unittest
from unittest.mock import MagicMock, patch

import requests

from freelancer_os.changes import InProcessChangeFeed, RedisChangeFeed
from freelancer_os.errors import UploadError
from freelancer_os.media import CloudinaryUploader, S3MediaUploader, validate_image


class ValidateImageTests(unittest.TestCase):
    def test_accepts_small_images(self):
        validate_image(b"\x89PNG", "image/png")

    def test_rejects_large_and_non_image_files(self):
        with self.assertRaises(UploadError) as ctx:
            validate_image(b"x" * 11, "image/png", max_bytes=10)
        self.assertTrue(ctx.exception.rejected)
        for content_type in (None, "", "application/pdf"):
            with self.assertRaises(UploadError):
                validate_image(b"x", content_type)


class CloudinaryUploaderTests(unittest.TestCase):
    def setUp(self):
        self.uploader = CloudinaryUploader(
            url="https://api.example.com/upload", upload_preset="profiles"
        )

    @patch("freelancer_os.media.requests.post")
    def test_returns_secure_url(self, mock_post):
        mock_post.return_value.ok = True
        mock_post.return_value.json.return_value = {"secure_url": "https://cdn/x.png"}

        url = self.uploader.upload("users/u1/profile/x.png", b"img", "image/png")

        self.assertEqual(url, "https://cdn/x.png")
        _, kwargs = mock_post.call_args
        self.assertEqual(kwargs["data"], {"upload_preset": "profiles"})
        self.assertEqual(kwargs["files"]["file"], ("x.png", b"img", "image/png"))

    @patch("freelancer_os.media.requests.post")
    def test_failures_raise_upload_error(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("down")
        with self.assertRaises(UploadError) as ctx:
            self.uploader.upload("a.png", b"img", "image/png")
        self.assertFalse(ctx.exception.rejected)

        mock_post.side_effect = None
        mock_post.return_value.ok = False
        mock_post.return_value.reason = "Bad Request"
        with self.assertRaises(UploadError):
            self.uploader.upload("a.png", b"img", "image/png")

        mock_post.return_value.ok = True
        mock_post.return_value.json.return_value = {}
        with self.assertRaises(UploadError):
            self.uploader.upload("a.png", b"img", "image/png")


class S3MediaUploaderTests(unittest.TestCase):
    @patch("freelancer_os.media.boto3.client")
    def test_put_object_and_public_url(self, mock_client):
        uploader = S3MediaUploader(
            bucket="media",
            region="us-east-1",
            endpoint="",
            access_key_id="",
            secret_access_key="",
            public_url="https://media.example.com/",
        )
        url = uploader.upload("users/u1/profile/x.png", b"img", "image/png")

        self.assertEqual(url, "https://media.example.com/users/u1/profile/x.png")
        mock_client.return_value.put_object.assert_called_once_with(
            Bucket="media",
            Key="users/u1/profile/x.png",
            Body=b"img",
            ContentType="image/png",
        )


class ChangeFeedTests(unittest.TestCase):
    def test_in_process_feed_fans_out(self):
        feed = InProcessChangeFeed()
        seen = []
        feed.connect(seen.append)
        feed.connect(lambda path: seen.append(path.upper()))
        feed.publish("users/u1")
        self.assertEqual(seen, ["users/u1", "USERS/U1"])
        feed.close()
        feed.publish("users/u2")
        self.assertEqual(len(seen), 2)

    @patch("freelancer_os.changes.redis.Redis.from_url")
    def test_redis_feed_relays_remote_changes_only(self, mock_from_url):
        client = MagicMock()
        mock_from_url.return_value = client
        feed = RedisChangeFeed(url="redis://localhost:6379/0")
        seen = []
        feed.connect(seen.append)

        feed.publish("users/u1/tasks")
        channel, message = client.publish.call_args[0]
        self.assertEqual(channel, "freelancer_os:changes")
        self.assertEqual(json.loads(message)["path"], "users/u1/tasks")

        feed._on_message({"data": message})
        feed._on_message({"data": json.dumps({"origin": "other", "path": "users/u2"})})
        feed._on_message({"data": b"not json"})
        self.assertEqual(seen, ["users/u1/tasks", "users/u2"])

        feed.close()
        client.pubsub.return_value.run_in_thread.return_value.stop.assert_called_once()


if __name__ == "__main__":
    unittest.main()
