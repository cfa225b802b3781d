from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from utils import kms_key_id_or_arn_to_id, logger

REQUIRED_SNAPSHOT_KEYS = ('DBClusterSnapshotIdentifier', 'DBClusterIdentifier', 'DBClusterSnapshotArn', 'SnapshotCreateTime')


@dataclass(frozen=True)
class Snapshot:
    identifier: str
    arn: str
    cluster_identifier: str
    created_at_time: datetime
    kms_key_id: Optional[str] = None


@dataclass(frozen=True)
class SnapshotForDeletion(Snapshot):
    # Another instance also claims this copy, only our tag may go
    just_remove_tag: bool = False


def is_usable_snapshot(snapshot):
    return all(snapshot.get(key) is not None for key in REQUIRED_SNAPSHOT_KEYS)

def snapshot_from_api(snapshot):
    """Build a ``Snapshot`` from a DescribeDBClusterSnapshots record.

    Returns ``None`` for records missing any of ``REQUIRED_SNAPSHOT_KEYS``.
    """
    if not is_usable_snapshot(snapshot):
        logger.debug("Dropping unusable snapshot record: %s", snapshot.get('DBClusterSnapshotIdentifier', '(no identifier)'))
        return None

    kms_key_id = snapshot.get('KmsKeyId')
    return Snapshot(
        identifier=snapshot['DBClusterSnapshotIdentifier'],
        arn=snapshot['DBClusterSnapshotArn'],
        cluster_identifier=snapshot['DBClusterIdentifier'],
        created_at_time=snapshot['SnapshotCreateTime'],
        kms_key_id=kms_key_id_or_arn_to_id(kms_key_id) if kms_key_id else None,
    )
