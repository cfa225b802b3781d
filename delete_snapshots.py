from datetime import timedelta
from utils import *
from models import SnapshotForDeletion, snapshot_from_api
from retention import SnapshotLatestQueue

    # TARGET
    # 1. list every cluster snapshot in the region
    # 2. keep the ones tagged CopiedBy/<this instance>
    #       if another instance also tagged it, only our tag may be removed
    # 3. exempt the latest N per cluster, then anything created recently
    # 4. delete, or tag DryRunDeletedAt when the policy is not applied


def ownership(tags, instance_identifier):
    """Return ``(copied_by_this_instance, copied_by_other_instance)``."""
    own_key = copied_by_tag_key(instance_identifier)
    copied_by_this_instance = False
    copied_by_other_instance = False
    for key, value in tags.items():
        if key == own_key and value == TAG_VALUE:
            copied_by_this_instance = True
        elif key.startswith(COPIED_BY_PREFIX) and key != own_key:
            copied_by_other_instance = True
    return copied_by_this_instance, copied_by_other_instance

def list_snapshots_for_deletion(client, instance_identifier):
    response = paginate_api_call(client, 'describe_db_cluster_snapshots', 'DBClusterSnapshots')

    snapshots = []
    for raw_snapshot in response['DBClusterSnapshots']:
        snapshot = snapshot_from_api(raw_snapshot)
        if snapshot is None:
            continue

        copied_by_this_instance, copied_by_other_instance = ownership(from_aws_tags(raw_snapshot.get('TagList')), instance_identifier)
        if not copied_by_this_instance:
            continue

        snapshots.append(SnapshotForDeletion(
            identifier=snapshot.identifier,
            arn=snapshot.arn,
            cluster_identifier=snapshot.cluster_identifier,
            created_at_time=snapshot.created_at_time,
            kms_key_id=snapshot.kms_key_id,
            just_remove_tag=copied_by_other_instance,
        ))

    logger.info("Found %i snapshot(s) copied by %s for deletion consideration", len(snapshots), instance_identifier)
    return snapshots

def filter_snapshots_for_deletion_policy(deletion_policy, snapshots, now=None):
    keep_latest = deletion_policy.keep_latest_count_per_db_cluster_identifier

    not_saved_snapshots = []
    saved_snapshots_per_cluster = {}
    for snapshot in snapshots:
        if not keep_latest:
            not_saved_snapshots.append(snapshot)
            continue

        if snapshot.cluster_identifier not in saved_snapshots_per_cluster:
            saved_snapshots_per_cluster[snapshot.cluster_identifier] = SnapshotLatestQueue(keep_latest)
        evicted = saved_snapshots_per_cluster[snapshot.cluster_identifier].push(snapshot)
        if evicted is not None:
            not_saved_snapshots.append(evicted)

    for cluster_identifier, queue in saved_snapshots_per_cluster.items():
        logger.info("Keeping latest %i snapshot(s) of %s: %s", keep_latest, cluster_identifier, [snapshot.identifier for snapshot in queue.snapshots])
    logger.info("Still considering %i snapshot(s) for deletion", len(not_saved_snapshots))

    if deletion_policy.keep_created_in_the_last_seconds is None:
        return not_saved_snapshots

    cutoff = as_utc(now or utc_now()) - timedelta(seconds=deletion_policy.keep_created_in_the_last_seconds)
    snapshots_to_delete = []
    for snapshot in not_saved_snapshots:
        if as_utc(snapshot.created_at_time) < cutoff:
            snapshots_to_delete.append(snapshot)
        else:
            logger.info("Keeping %s, created %s which is after %s", snapshot.identifier, snapshot.created_at_time, cutoff)

    return snapshots_to_delete

def delete_snapshot(client, snapshot, deletion_policy, instance_identifier, now=None):
    if snapshot.just_remove_tag:
        logger.info("Snapshot %s is also copied by another instance, removing tag for %s", snapshot.identifier, instance_identifier)
        client.remove_tags_from_resource(ResourceName=snapshot.arn, TagKeys=[copied_by_tag_key(instance_identifier)])
        return

    if deletion_policy.apply:
        logger.info("Deleting snapshot %s", snapshot.identifier)
        client.delete_db_cluster_snapshot(DBClusterSnapshotIdentifier=snapshot.identifier)
        return

    dry_run_at = format_timestamp(now or utc_now())
    logger.info("Dry-run, marking snapshot %s as would-have-deleted at %s", snapshot.identifier, dry_run_at)
    client.add_tags_to_resource(ResourceName=snapshot.arn, Tags=[{'Key': DRY_RUN_DELETED_AT_KEY, 'Value': dry_run_at}])

def handle_snapshot_deletion(deletion_policy, client, region, instance_identifier):
    """Apply ``deletion_policy`` to this instance's copies in ``region``.

    Returns one ``UnitResult`` per snapshot acted on.
    """
    if deletion_policy is None:
        logger.info("No deletion policy, nothing to do in %s", region)
        return []

    logger.info("Handling deletion policy in %s: %s", region, deletion_policy)
    snapshots = list_snapshots_for_deletion(client, instance_identifier)
    snapshots_to_delete = filter_snapshots_for_deletion_policy(deletion_policy, snapshots)

    return run_concurrently(lambda snapshot: delete_snapshot(client, snapshot, deletion_policy, instance_identifier), snapshots_to_delete)

def delete_snapshots(options, session=None):
    """Run the deletion policy in every target region, returning failed units."""
    clients = {}
    for region in options.target.regions:
        clients[region] = rds_client(region, session)

    region_results = run_concurrently(
        lambda region: handle_snapshot_deletion(options.target.deletion_policy, clients[region], region, options.instance_identifier),
        options.target.regions,
    )

    failures = log_failures(region_results, 'list snapshots for deletion in region')
    for unit in region_results:
        if not unit.failed:
            failures += log_failures(unit.result, f"apply deletion policy in {unit.item}")
    return failures
