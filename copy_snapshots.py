import os
from datetime import datetime
from utils import *
import yaml
from botocore.exceptions import ClientError
from models import snapshot_from_api
from retention import SnapshotLatestQueue
from settings import options_from_env, options_summary
import delete_snapshots


ALREADY_EXISTS_CODE = 'DBClusterSnapshotAlreadyExistsFault'
_ACCOUNT_NAMESPACE_PATTERN = re.compile(r'^rds:')

    # SOURCE
    # 1. list cluster snapshots for every source selector, in parallel
    # 2. keep the latest N snapshots per cluster across all sources
    # 3. copy every kept snapshot to every target region, tagging it CopiedBy/<instance>
    #       if the copy already exists, just add our CopiedBy tag to it
    # TARGET
    # 4. apply the deletion policy to the snapshots we own in each target region


def lambda_handler(event, context):
    options = options_from_env(os.environ)
    logger.info("Found options:\n%s", yaml.safe_dump(options_summary(options), default_flow_style=False))
    return run(options)

def run(options, session=None):
    now = datetime.now()
    client = rds_client(options.source_region, session)

    source_results = run_concurrently(lambda source: list_snapshots_matching_source(client, source), options.sources)
    failures = log_failures(source_results, 'list snapshots matching source')

    snapshots = []
    for unit in source_results:
        if not unit.failed:
            snapshots.extend(unit.result)
    logger.info("Matched %i snapshot(s) from %i source(s)", len(snapshots), len(options.sources))

    aggregated_snapshots = aggregate_snapshots(snapshots, options.aggregation)
    logger.info("Snapshots to copy:\n%s", yaml.safe_dump([snapshot.identifier for snapshot in aggregated_snapshots], default_flow_style=False))

    failures += copy_snapshots(aggregated_snapshots, options, session)
    failures += delete_snapshots.delete_snapshots(options, session)

    then = datetime.now()
    logger.info("Finished in %ss", (then - now).seconds)

    if failures:
        raise SnapshotCopierException(f"{len(failures)} unit(s) of work failed, see log for details")

    return {
        'matched': len(snapshots),
        'aggregated': len(aggregated_snapshots),
        'target_regions': list(options.target.regions),
    }

def snapshot_from_api_matches_source(source, snapshot):
    name = snapshot.get('DBClusterSnapshotIdentifier')

    # The API filters on these already, checked again in case it did not
    if source.db_cluster_identifier and source.db_cluster_identifier != snapshot.get('DBClusterIdentifier'):
        logger.info("Rejecting %s: cluster identifier %s is not %s", name, snapshot.get('DBClusterIdentifier'), source.db_cluster_identifier)
        return False

    if source.tags:
        snapshot_tags = from_aws_tags(snapshot.get('TagList'))
        for filter_tag_key, filter_tag_values in source.tags.items():
            snapshot_tag_value = snapshot_tags.get(filter_tag_key)
            if filter_tag_values is True:
                if snapshot_tag_value is None:
                    logger.info("Rejecting %s: required tag %s is missing", name, filter_tag_key)
                    return False
            elif snapshot_tag_value not in filter_tag_values:
                logger.info("Rejecting %s: tag %s=%s is not one of %s", name, filter_tag_key, snapshot_tag_value, filter_tag_values)
                return False

    if source.snapshot_create_time_not_before:
        snapshot_create_time = snapshot.get('SnapshotCreateTime')
        if snapshot_create_time is None:
            logger.info("Rejecting %s: snapshot create time not set", name)
            return False

        if as_utc(snapshot_create_time) < as_utc(source.snapshot_create_time_not_before):
            logger.info("Rejecting %s: created %s, before %s", name, snapshot_create_time, source.snapshot_create_time_not_before)
            return False

    if source.snapshot_type and snapshot.get('SnapshotType') != source.snapshot_type:
        logger.info("Rejecting %s: snapshot type %s is not %s", name, snapshot.get('SnapshotType'), source.snapshot_type)
        return False

    return True

def list_snapshots_matching_source(client, source):
    kwargs = {}
    if source.db_cluster_identifier:
        kwargs['DBClusterIdentifier'] = source.db_cluster_identifier
    if source.snapshot_type:
        kwargs['SnapshotType'] = source.snapshot_type

    response = paginate_api_call(client, 'describe_db_cluster_snapshots', 'DBClusterSnapshots', **kwargs)
    logger.info("Processing %i DBClusterSnapshots for source %s", len(response['DBClusterSnapshots']), source)

    snapshots = []
    for raw_snapshot in response['DBClusterSnapshots']:
        snapshot = snapshot_from_api(raw_snapshot)
        if snapshot is None:
            continue

        if snapshot_from_api_matches_source(source, raw_snapshot):
            logger.info("Matched snapshot %s of cluster %s", snapshot.identifier, snapshot.cluster_identifier)
            snapshots.append(snapshot)

    return snapshots

def aggregate_snapshots(snapshots, aggregation=None):
    if not aggregation or not aggregation.latest_count_per_cluster:
        return snapshots

    latest_snapshots_per_cluster = {}
    for snapshot in snapshots:
        if snapshot.cluster_identifier not in latest_snapshots_per_cluster:
            latest_snapshots_per_cluster[snapshot.cluster_identifier] = SnapshotLatestQueue(aggregation.latest_count_per_cluster)
        evicted = latest_snapshots_per_cluster[snapshot.cluster_identifier].push(snapshot)
        if evicted is not None:
            logger.info("Not copying %s, more recent snapshots of %s exist", evicted.identifier, evicted.cluster_identifier)

    kept_snapshots = []
    for queue in latest_snapshots_per_cluster.values():
        kept_snapshots.extend(queue.snapshots)

    return kept_snapshots

def target_snapshot_identifier(identifier):
    return _ACCOUNT_NAMESPACE_PATTERN.sub('', identifier)

def copy_tags(snapshot, source_region, instance_identifier):
    tags = [
        ownership_tag(instance_identifier),
        {
            'Key': COPIED_FROM_REGION_KEY,
            'Value': source_region
        }
    ]
    if snapshot.kms_key_id:
        tags.append({
            'Key': SOURCE_REGION_KMS_KEY_ID_KEY,
            'Value': snapshot.kms_key_id
        })
    return tags

def get_default_rds_kms_key_id(client):
    response = paginate_api_call(client, 'list_aliases', 'Aliases')
    for alias in response['Aliases']:
        if alias.get('AliasName') == DEFAULT_RDS_KMS_ALIAS:
            return alias.get('TargetKeyId')
    return None

def copy_snapshot_to_region(client, snapshot, source_region, target_region, source_region_default_kms_key_id, target_region_default_kms_key_id, instance_identifier):
    """Start copying ``snapshot`` with the target region's ``client``.

    A snapshot encrypted with the source region's default aws/rds key is
    copied with the target region's default key. A copy that already exists
    is claimed by adding this instance's CopiedBy tag instead.
    """
    if source_region == target_region:
        logger.error("Cannot copy snapshot %s to the region it is in: %s", snapshot.identifier, target_region)
        return

    target_region_kms_key_id = None
    if snapshot.kms_key_id and snapshot.kms_key_id == source_region_default_kms_key_id:
        target_region_kms_key_id = target_region_default_kms_key_id
    logger.info("Snapshot %s KMS key %s, source default %s, copying with %s", snapshot.identifier, snapshot.kms_key_id, source_region_default_kms_key_id, target_region_kms_key_id or '(none)')

    target_snapshot = target_snapshot_identifier(snapshot.identifier)
    kwargs = {
        'SourceDBClusterSnapshotIdentifier': snapshot.arn,
        'TargetDBClusterSnapshotIdentifier': target_snapshot,
        'CopyTags': True,
        'Tags': copy_tags(snapshot, source_region, instance_identifier),
        'SourceRegion': source_region,
    }
    if target_region_kms_key_id:
        kwargs['KmsKeyId'] = target_region_kms_key_id

    logger.info("Copying snapshot %s from %s to %s as %s", snapshot.identifier, source_region, target_region, target_snapshot)
    try:
        client.copy_db_cluster_snapshot(**kwargs)
    except ClientError as e:
        if e.response['Error']['Code'] != ALREADY_EXISTS_CODE:
            raise
        logger.info("Snapshot already exists in the target region: %s (%s)", target_snapshot, target_region)
        tag_existing_target_snapshot(client, snapshot, target_snapshot, instance_identifier)
        return

    logger.info("Snapshot copy initiated: %s to %s", snapshot.identifier, target_region)

def tag_existing_target_snapshot(client, snapshot, target_snapshot, instance_identifier):
    response = client.describe_db_cluster_snapshots(DBClusterSnapshotIdentifier=target_snapshot)
    existing_snapshots = response.get('DBClusterSnapshots') or []

    if not existing_snapshots:
        logger.error("Unable to find snapshot %s in target region, no matches (source %s)", target_snapshot, snapshot.identifier)
        return

    target_snapshot_arn = existing_snapshots[0].get('DBClusterSnapshotArn')
    if not target_snapshot_arn:
        logger.error("Unable to find snapshot %s in target region, found snapshot but it has no ARN (source %s)", target_snapshot, snapshot.identifier)
        return

    client.add_tags_to_resource(ResourceName=target_snapshot_arn, Tags=[ownership_tag(instance_identifier)])
    logger.info("Tagged existing snapshot %s as copied by %s", target_snapshot_arn, instance_identifier)

def copy_snapshots_to_region(snapshots, source_region, target_region, instance_identifier, client_target, source_kms, target_kms):
    source_region_default_kms_key_id = get_default_rds_kms_key_id(source_kms)
    target_region_default_kms_key_id = get_default_rds_kms_key_id(target_kms)

    def copy(snapshot):
        copy_snapshot_to_region(
            client_target,
            snapshot,
            source_region,
            target_region,
            source_region_default_kms_key_id,
            target_region_default_kms_key_id,
            instance_identifier,
        )

    return run_concurrently(copy, snapshots)

def copy_snapshots(snapshots, options, session=None):
    """Copy ``snapshots`` to every target region, returning failed units."""
    if not options.source_region:
        logger.error("Unable to determine the source region from AWS_REGION, not copying to %s", options.target.regions)
        return []

    # clients are built here, the worker threads only make calls on them
    source_kms = kms_client(options.source_region, session)
    clients = {}
    for region in options.target.regions:
        clients[region] = (rds_client(region, session), kms_client(region, session))

    region_results = run_concurrently(
        lambda region: copy_snapshots_to_region(snapshots, options.source_region, region, options.instance_identifier, clients[region][0], source_kms, clients[region][1]),
        options.target.regions,
    )

    failures = log_failures(region_results, 'prepare copies to region')
    for unit in region_results:
        if not unit.failed:
            failures += log_failures(unit.result, f"copy snapshot to {unit.item}")
    return failures
