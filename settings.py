import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from utils import InvalidConfiguration, as_utc, format_timestamp, is_list_of_strings, logger

DEFAULT_INSTANCE_IDENTIFIER = 'default'

TagFilter = Dict[str, Union[List[str], bool]]


@dataclass(frozen=True)
class SourceSelector:
    db_cluster_identifier: Optional[str] = None
    tags: Optional[TagFilter] = None
    snapshot_create_time_not_before: Optional[datetime] = None
    snapshot_type: Optional[str] = None


@dataclass(frozen=True)
class SourceAggregation:
    latest_count_per_cluster: Optional[int] = None


@dataclass(frozen=True)
class DeletionPolicy:
    keep_latest_count_per_db_cluster_identifier: Optional[int] = None
    keep_created_in_the_last_seconds: Optional[int] = None
    apply: bool = False


@dataclass(frozen=True)
class Target:
    regions: Tuple[str, ...] = ()
    deletion_policy: Optional[DeletionPolicy] = None


@dataclass(frozen=True)
class HandlerOptions:
    sources: Tuple[SourceSelector, ...] = ()
    target: Target = field(default_factory=Target)
    aggregation: Optional[SourceAggregation] = None
    instance_identifier: str = DEFAULT_INSTANCE_IDENTIFIER
    source_region: Optional[str] = None


def parse_timestamp(value):
    raw = value.strip()
    if raw.endswith('Z'):
        raw = raw[:-1] + '+00:00'
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError as e:
        raise InvalidConfiguration(f"Invalid timestamp {value!r}") from e

def _parse_int(name, value, minimum):
    try:
        parsed = int(value)
    except ValueError as e:
        raise InvalidConfiguration(f"{name} must be an integer, got {value!r}") from e
    if parsed < minimum:
        raise InvalidConfiguration(f"{name} must be at least {minimum}, got {parsed}")
    return parsed

def _parse_tags(raw_tags):
    try:
        parsed_tags = json.loads(raw_tags)
    except ValueError:
        logger.error("Error reading tags as JSON: %s", raw_tags)
        return None

    if not isinstance(parsed_tags, dict):
        logger.error("Unexpected shape of parsed JSON for tags: %s", raw_tags)
        return None

    validated_tags = {}
    for tag_name, tag_values in parsed_tags.items():
        if is_list_of_strings(tag_values):
            validated_tags[tag_name] = tag_values
        elif tag_values is True:
            validated_tags[tag_name] = True
        else:
            logger.warning("Ignoring tag filter %s with unsupported values %r", tag_name, tag_values)

    return validated_tags or None


def source_to_env(source, index):
    env = {}

    if source.db_cluster_identifier:
        env[f"SOURCE_{index}_DB_CLUSTER_IDENTIFIER"] = source.db_cluster_identifier
    if source.tags:
        env[f"SOURCE_{index}_TAGS"] = json.dumps(source.tags, separators=(',', ':'))
    if source.snapshot_create_time_not_before:
        env[f"SOURCE_{index}_SNAPSHOT_CREATE_TIME_NOT_BEFORE"] = format_timestamp(source.snapshot_create_time_not_before)
    if source.snapshot_type:
        env[f"SOURCE_{index}_SNAPSHOT_TYPE"] = source.snapshot_type

    return env

def source_from_env(env, index):
    """Read source selector ``index``.

    ``None`` when nothing usable is set for it, so an unreadable tag filter
    never turns into a selector that matches every snapshot.
    """
    raw_tags = env.get(f"SOURCE_{index}_TAGS")
    raw_not_before = env.get(f"SOURCE_{index}_SNAPSHOT_CREATE_TIME_NOT_BEFORE")

    source = SourceSelector(
        db_cluster_identifier=env.get(f"SOURCE_{index}_DB_CLUSTER_IDENTIFIER"),
        tags=_parse_tags(raw_tags) if raw_tags is not None else None,
        snapshot_create_time_not_before=parse_timestamp(raw_not_before) if raw_not_before is not None else None,
        snapshot_type=env.get(f"SOURCE_{index}_SNAPSHOT_TYPE"),
    )

    if source == SourceSelector():
        return None

    return source

def options_to_env(options):
    env = {}

    for index, source in enumerate(options.sources):
        env.update(source_to_env(source, index))

    if options.aggregation and options.aggregation.latest_count_per_cluster is not None:
        env['AGGREGATION_LATEST_COUNT_PER_CLUSTER'] = str(options.aggregation.latest_count_per_cluster)

    deletion_policy = options.target.deletion_policy
    if deletion_policy:
        if deletion_policy.keep_latest_count_per_db_cluster_identifier is not None:
            env['TARGET_DELETION_POLICY_KEEP_LATEST_COUNT_PER_DB_CLUSTER_IDENTIFIER'] = str(deletion_policy.keep_latest_count_per_db_cluster_identifier)
        if deletion_policy.keep_created_in_the_last_seconds is not None:
            env['TARGET_DELETION_POLICY_KEEP_CREATED_IN_THE_LAST_SECONDS'] = str(deletion_policy.keep_created_in_the_last_seconds)
        env['TARGET_DELETION_POLICY_APPLY'] = '1' if deletion_policy.apply else ''

    env['TARGET_REGIONS'] = ','.join(options.target.regions)
    env['INSTANCE_IDENTIFIER'] = options.instance_identifier

    return env

def options_from_env(env):
    sources = []
    index = 0
    while True:
        source = source_from_env(env, index)
        if source is None:
            break
        sources.append(source)
        index += 1

    raw_regions = env.get('TARGET_REGIONS', '')
    regions = tuple(region.strip() for region in raw_regions.split(',') if region.strip())

    deletion_policy = None
    raw_keep_latest = env.get('TARGET_DELETION_POLICY_KEEP_LATEST_COUNT_PER_DB_CLUSTER_IDENTIFIER')
    raw_keep_seconds = env.get('TARGET_DELETION_POLICY_KEEP_CREATED_IN_THE_LAST_SECONDS')
    raw_apply = env.get('TARGET_DELETION_POLICY_APPLY')
    if any(raw is not None for raw in (raw_keep_latest, raw_keep_seconds, raw_apply)):
        deletion_policy = DeletionPolicy(
            keep_latest_count_per_db_cluster_identifier=_parse_int('TARGET_DELETION_POLICY_KEEP_LATEST_COUNT_PER_DB_CLUSTER_IDENTIFIER', raw_keep_latest, 1) if raw_keep_latest is not None else None,
            keep_created_in_the_last_seconds=_parse_int('TARGET_DELETION_POLICY_KEEP_CREATED_IN_THE_LAST_SECONDS', raw_keep_seconds, 0) if raw_keep_seconds is not None else None,
            apply=bool(raw_apply),
        )

    aggregation = None
    raw_latest_count = env.get('AGGREGATION_LATEST_COUNT_PER_CLUSTER')
    if raw_latest_count is not None:
        aggregation = SourceAggregation(
            latest_count_per_cluster=_parse_int('AGGREGATION_LATEST_COUNT_PER_CLUSTER', raw_latest_count, 1),
        )

    source_region = (env.get('AWS_REGION') or env.get('AWS_DEFAULT_REGION') or '').strip() or None

    return HandlerOptions(
        sources=tuple(sources),
        target=Target(regions=regions, deletion_policy=deletion_policy),
        aggregation=aggregation,
        instance_identifier=(env.get('INSTANCE_IDENTIFIER') or '').strip() or DEFAULT_INSTANCE_IDENTIFIER,
        source_region=source_region,
    )

def options_summary(options):
    """Plain-data view of the options, for logging."""
    return {
        'sources': [
            {
                'db_cluster_identifier': source.db_cluster_identifier,
                'tags': source.tags,
                'snapshot_create_time_not_before': format_timestamp(source.snapshot_create_time_not_before) if source.snapshot_create_time_not_before else None,
                'snapshot_type': source.snapshot_type,
            }
            for source in options.sources
        ],
        'aggregation': options.aggregation.latest_count_per_cluster if options.aggregation else None,
        'target_regions': list(options.target.regions),
        'deletion_policy': vars(options.target.deletion_policy).copy() if options.target.deletion_policy else None,
        'instance_identifier': options.instance_identifier,
        'source_region': options.source_region,
    }
