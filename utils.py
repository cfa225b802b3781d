import boto3
from datetime import datetime, timezone
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Optional
import os
import logging
import re

TAG_PREFIX = 'aurora-snapshot-copier-cdk'
TAG_VALUE = 'aurora-snapshot-copier-cdk'
COPIED_BY_PREFIX = f"{TAG_PREFIX}/CopiedBy/"
COPIED_FROM_REGION_KEY = f"{TAG_PREFIX}/CopiedFromRegion"
SOURCE_REGION_KMS_KEY_ID_KEY = f"{TAG_PREFIX}/SourceRegionKmsKeyId"
DRY_RUN_DELETED_AT_KEY = f"{TAG_PREFIX}/DryRunDeletedAt"
DEFAULT_RDS_KMS_ALIAS = 'alias/aws/rds'
MAX_WORKERS = int(os.getenv('MAX_WORKERS', '10'))

_LOGLEVEL = os.getenv('LOG_LEVEL', 'INFO').strip()
_KMS_ARN_PATTERN = re.compile(r'^arn:aws[\w-]*:kms:')


logger = logging.getLogger()
logger.setLevel(_LOGLEVEL.upper())


class SnapshotCopierException(Exception):
    pass


class InvalidConfiguration(SnapshotCopierException):
    pass


@dataclass
class UnitResult:
    item: Any
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def failed(self):
        return self.error is not None


def paginate_api_call(client, api_call, objecttype, **kwargs):
    response = {}
    response[objecttype] = []
    paginator = client.get_paginator(api_call)
    page_iterator = paginator.paginate(**kwargs)
    for page in page_iterator:
        for item in page.get(objecttype, []):
            response[objecttype].append(item)

    return response

def from_aws_tags(collection):
    """Turn an AWS ``TagList`` into a plain dict.

    Entries without a string ``Key`` and ``Value`` are dropped; a repeated
    key keeps the last value seen.
    """
    tags = {}
    for tag in collection or []:
        key = tag.get('Key')
        value = tag.get('Value')
        if isinstance(key, str) and isinstance(value, str):
            tags[key] = value
    return tags

def copied_by_tag_key(instance_identifier):
    return f"{COPIED_BY_PREFIX}{instance_identifier}"

def ownership_tag(instance_identifier):
    return {
        'Key': copied_by_tag_key(instance_identifier),
        'Value': TAG_VALUE
    }

def kms_key_id_or_arn_to_id(key_id_or_arn):
    if _KMS_ARN_PATTERN.match(key_id_or_arn):
        return key_id_or_arn.rsplit('/', 1)[-1]
    return key_id_or_arn

def is_list_of_strings(value):
    return isinstance(value, list) and all(isinstance(item, str) for item in value)

def utc_now():
    return datetime.now(timezone.utc)

def as_utc(value):
    # boto3 returns aware datetimes; configuration may hand us naive ones
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

def format_timestamp(value):
    value = as_utc(value).astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + '%03dZ' % (value.microsecond // 1000)

def rds_client(region, session=None):
    return (session or boto3).client('rds', region_name=region)

def kms_client(region, session=None):
    return (session or boto3).client('kms', region_name=region)

def run_concurrently(func, items, max_workers=MAX_WORKERS):
    """Call ``func(item)`` for every item on a thread pool.

    Waits for all units to settle and returns one ``UnitResult`` per item,
    in input order. A failing unit never cancels its siblings.
    """
    items = list(items)
    if not items:
        return []

    results = []
    with ThreadPoolExecutor(max_workers=min(max_workers, len(items))) as executor:
        futures = [executor.submit(func, item) for item in items]
        for item, future in zip(items, futures):
            try:
                results.append(UnitResult(item, result=future.result()))
            except Exception as e:
                results.append(UnitResult(item, error=e))

    return results

def log_failures(results, description):
    failures = [unit for unit in results if unit.failed]
    for unit in failures:
        logger.error("Failed to %s for %s: %s", description, unit.item, unit.error)
    return failures
