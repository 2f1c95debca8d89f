"""
Unit Tests for the Instance Metadata Client
"""

import unittest
from unittest.mock import Mock

import requests

from .metadata import MetadataClient, resolve_instance_identity
from .test_fakes import FakeMetadataClient, INSTANCE_ID, AVAILABILITY_ZONE


def response(status=200, text=""):
    r = Mock()
    r.status_code = status
    r.text = text
    if status >= 400:
        r.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status}")
    return r


class TestMetadataClient(unittest.TestCase):

    def setUp(self):
        self.session = Mock(spec=requests.Session)
        self.client = MetadataClient(base_url="http://imds.test/latest/", timeout=1, session=self.session)

    def test_fetches_token_once(self):
        self.session.put.return_value = response(text="token-1")
        self.session.get.return_value = response(text="i-1\n")

        self.assertEqual(self.client.get("meta-data/instance-id"), "i-1")
        self.assertEqual(self.client.get("/meta-data/instance-id"), "i-1")

        self.session.put.assert_called_once()
        url = self.session.get.call_args.args[0]
        self.assertEqual(url, "http://imds.test/latest/meta-data/instance-id")
        self.assertEqual(self.session.get.call_args.kwargs["headers"], {"X-aws-ec2-metadata-token": "token-1"})

    def test_refreshes_expired_token(self):
        self.session.put.side_effect = [response(text="old"), response(text="new")]
        self.session.get.side_effect = [response(status=401), response(text="eu-west-1a")]

        self.assertEqual(self.client.get("meta-data/placement/availability-zone"), "eu-west-1a")
        self.assertEqual(self.session.put.call_count, 2)

    def test_http_errors_raised(self):
        self.session.put.return_value = response(text="token")
        self.session.get.return_value = response(status=404)
        with self.assertRaises(requests.exceptions.HTTPError):
            self.client.get("meta-data/missing")

    def test_connection_errors_raised(self):
        self.session.put.side_effect = requests.exceptions.ConnectTimeout("timeout")
        with self.assertRaises(requests.exceptions.RequestException):
            self.client.get("meta-data/instance-id")


class TestResolveInstanceIdentity(unittest.TestCase):

    def test_resolves_identity(self):
        instance = resolve_instance_identity(FakeMetadataClient())
        self.assertEqual(instance.id, INSTANCE_ID)
        self.assertEqual(instance.region, "eu-west-1")
        self.assertEqual(instance.availability_zone, AVAILABILITY_ZONE)
        self.assertEqual(instance.node_id, "")
        self.assertIsNone(instance.volume)

    def test_region_override(self):
        client = FakeMetadataClient()
        instance = resolve_instance_identity(client, region_override="us-east-1")
        self.assertEqual(instance.region, "us-east-1")
        self.assertNotIn("meta-data/placement/region", client.requests)

    def test_empty_instance_id(self):
        client = FakeMetadataClient({"meta-data/instance-id": ""})
        with self.assertRaises(ValueError):
            resolve_instance_identity(client)


if __name__ == "__main__":
    unittest.main()
