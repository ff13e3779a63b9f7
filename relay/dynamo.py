"""
DynamoDB transport backend.

Table layout (created by the infra stack, not by the relay):
- Partition key: channel (S)
- Sort key: invokeId (S)
- TTL attribute: ttl (N, epoch seconds)

The liveness row of a channel lives at (channel + "_TTL", "0").
"""
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Key, Attr
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from relay.base import RecordKey, TransportStore
from relay.records import (
    LIVENESS_SORT_KEY,
    InvocationRecord,
    InvokeStatus,
    LivenessRecord,
    liveness_key,
)

PARTITION_KEY = "channel"
SORT_KEY = "invokeId"
BODY_ATTR = "body"
STATUS_ATTR = "invokeStatus"
RESULT_ATTR = "result"
TTL_ATTR = "ttl"

_BOTO_CONFIG = Config(retries={"max_attempts": 3, "mode": "standard"})


def record_to_item(record: InvocationRecord) -> Dict[str, Any]:
    item = {
        PARTITION_KEY: record.channel,
        SORT_KEY: record.invoke_id,
        BODY_ATTR: record.payload,
        STATUS_ATTR: record.status.value,
    }
    if record.result is not None:
        item[RESULT_ATTR] = record.result
    if record.ttl is not None:
        item[TTL_ATTR] = int(record.ttl)
    return item


def item_to_record(item: Dict[str, Any]) -> InvocationRecord:
    ttl = item.get(TTL_ATTR)
    return InvocationRecord(
        channel=item[PARTITION_KEY],
        invoke_id=item[SORT_KEY],
        payload=item.get(BODY_ATTR, ""),
        status=InvokeStatus(item[STATUS_ATTR]),
        result=item.get(RESULT_ATTR),
        ttl=int(ttl) if ttl is not None else None,
    )


def _is_liveness_item(item: Dict[str, Any]) -> bool:
    return item.get(SORT_KEY) == LIVENESS_SORT_KEY and STATUS_ATTR not in item


class DynamoStore(TransportStore):
    """
    TransportStore on a DynamoDB table through the boto3 resource API.
    """

    transient_errors = (ClientError, BotoCoreError)
    backend_name = "dynamodb"

    def __init__(self, table_name: str, dynamodb_resource=None,
                 region: Optional[str] = None, profile: Optional[str] = None):
        """
        Args:
            table_name: Name of the mirror table
            dynamodb_resource: Pre-built boto3 DynamoDB resource (optional)
            region: AWS region used when building the resource
            profile: AWS named profile used when building the resource
        """
        if not table_name:
            raise ValueError("A DynamoDB table name is required")

        if dynamodb_resource is None:
            session = boto3.session.Session(profile_name=profile, region_name=region)
            dynamodb_resource = session.resource("dynamodb", config=_BOTO_CONFIG)

        self.dynamodb = dynamodb_resource
        self.table_name = table_name
        self.table = dynamodb_resource.Table(table_name)

    def _put(self, record: InvocationRecord) -> None:
        self.table.put_item(Item=record_to_item(record))

    def _get(self, channel: str, invoke_id: str) -> Optional[InvocationRecord]:
        response = self.table.get_item(
            Key={PARTITION_KEY: channel, SORT_KEY: invoke_id},
            ConsistentRead=True
        )
        item = response.get("Item")
        return item_to_record(item) if item else None

    def _paginate(self, method, **kwargs) -> List[Dict[str, Any]]:
        items = []
        while True:
            response = method(**kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key

    def _query(self, channel: str, status: Optional[InvokeStatus]) -> List[InvocationRecord]:
        kwargs = {
            "KeyConditionExpression": Key(PARTITION_KEY).eq(channel),
            "ConsistentRead": True,
        }
        if status is not None:
            kwargs["FilterExpression"] = Attr(STATUS_ATTR).eq(InvokeStatus(status).value)
        return [item_to_record(item) for item in self._paginate(self.table.query, **kwargs)]

    def _scan(self, channel: Optional[str]) -> List[InvocationRecord]:
        kwargs = {}
        if channel is not None:
            kwargs["FilterExpression"] = Attr(PARTITION_KEY).eq(channel)
        return [
            item_to_record(item)
            for item in self._paginate(self.table.scan, **kwargs)
            if not _is_liveness_item(item)
        ]

    def _batch_put(self, records: List[InvocationRecord]) -> List[InvocationRecord]:
        response = self.dynamodb.batch_write_item(
            RequestItems={
                self.table_name: [{"PutRequest": {"Item": record_to_item(r)}} for r in records]
            }
        )
        unprocessed = response.get("UnprocessedItems", {}).get(self.table_name, [])
        unprocessed_keys = {
            (req["PutRequest"]["Item"][PARTITION_KEY], req["PutRequest"]["Item"][SORT_KEY])
            for req in unprocessed
        }
        return [r for r in records if r.key in unprocessed_keys]

    def _delete(self, channel: str, invoke_id: str) -> None:
        self.table.delete_item(Key={PARTITION_KEY: channel, SORT_KEY: invoke_id})

    def _batch_delete(self, keys: List[RecordKey]) -> int:
        response = self.dynamodb.batch_write_item(
            RequestItems={
                self.table_name: [
                    {"DeleteRequest": {"Key": {PARTITION_KEY: channel, SORT_KEY: invoke_id}}}
                    for channel, invoke_id in keys
                ]
            }
        )
        unprocessed = response.get("UnprocessedItems", {}).get(self.table_name, [])
        return len(keys) - len(unprocessed)

    def _touch_liveness(self, channel: str, timestamp: int) -> None:
        self.table.update_item(
            Key={PARTITION_KEY: liveness_key(channel), SORT_KEY: LIVENESS_SORT_KEY},
            UpdateExpression="SET #ttl = :now",
            ExpressionAttributeNames={"#ttl": TTL_ATTR},
            ExpressionAttributeValues={":now": timestamp},
        )

    def _get_liveness(self, channel: str) -> Optional[LivenessRecord]:
        response = self.table.get_item(
            Key={PARTITION_KEY: liveness_key(channel), SORT_KEY: LIVENESS_SORT_KEY},
            ConsistentRead=True
        )
        item = response.get("Item")
        if not item or item.get(TTL_ATTR) is None:
            return None
        return LivenessRecord(channel=channel, ttl=int(item[TTL_ATTR]))
