import threading
from datetime import datetime, timezone
from unittest import mock

from botocore.exceptions import ClientError

from models import Snapshot, SnapshotForDeletion


def utc(year, month, day):
    return datetime(year, month, day, tzinfo=timezone.utc)


def snapshot(identifier, cluster_identifier, created_at_time, kms_key_id=None):
    return Snapshot(identifier, identifier, cluster_identifier, created_at_time, kms_key_id)


def snapshot_for_deletion(identifier, cluster_identifier, created_at_time, just_remove_tag=False):
    return SnapshotForDeletion(identifier, identifier, cluster_identifier, created_at_time, just_remove_tag=just_remove_tag)


def client_error(code, operation='CopyDBClusterSnapshot'):
    return ClientError({'Error': {'Code': code, 'Message': code}}, operation)


def paginated_client(pages):
    """MagicMock client whose paginators yield ``pages``."""
    client = mock.MagicMock()
    client.get_paginator.return_value.paginate.return_value = pages
    return client


class FakeSession:
    """Stands in for a boto3 Session, handing out one mock per service and region.

    Remembers the thread each client was built on.
    """

    def __init__(self, clients):
        self.clients = clients
        self.client_threads = []

    def client(self, service, region_name=None):
        self.client_threads.append(threading.current_thread())
        return self.clients[(service, region_name)]
