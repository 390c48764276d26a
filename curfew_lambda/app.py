import os
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import boto3


def log_level(name):
    """Map a LOG_LEVEL name to a logging level, INFO when unset or unrecognised."""
    level = getattr(logging, str(name or "").upper(), None)
    return level if isinstance(level, int) else logging.INFO


# Configure logging
logger = logging.getLogger()
logger.setLevel(log_level(os.environ.get("LOG_LEVEL")))

INSTANCE_TAG_KEY = "AutoSchedule"
INSTANCE_TAG_VALUE = "on"
INSTANCE_STATES = ("running", "stopped")
VALID_MODES = ("start", "stop")

DEFAULT_LOG_TABLE_NAME = "Ec2CurfewLogs"
SNS_SUBJECT = "EC2 Curfew: Instances will be stopped"


class InvalidModeError(ValueError):
    """Raised when the resolved mode is neither 'start' nor 'stop'."""


@dataclass
class CurfewConfig:
    log_table_name: str = DEFAULT_LOG_TABLE_NAME
    sns_topic_arn: Optional[str] = None
    default_mode: Optional[str] = None
    tag_key: str = INSTANCE_TAG_KEY
    tag_value: str = INSTANCE_TAG_VALUE

    @classmethod
    def from_env(cls, environ=None):
        """Read LOG_TABLE_NAME, SNS_TOPIC_ARN and MODE from the environment."""
        env = os.environ if environ is None else environ
        return cls(
            log_table_name=env.get("LOG_TABLE_NAME") or DEFAULT_LOG_TABLE_NAME,
            sns_topic_arn=env.get("SNS_TOPIC_ARN") or None,
            default_mode=env.get("MODE") or None,
        )


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-05-01T22:00:00.123Z."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_log_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"


def resolve_mode(event, default_mode=None):
    """
    Pick the mode from an EventBridge event.
    detail.mode wins over a top-level mode, which wins over the configured default.
    Empty values fall through to the next source.
    """
    if not isinstance(event, dict):
        event = {}
    detail = event.get("detail") or {}
    if not isinstance(detail, dict):
        detail = {}
    return detail.get("mode") or event.get("mode") or default_mode


def _tag_value(instance, key):
    for tag in instance.get("Tags") or []:
        if tag.get("Key") == key:
            return tag.get("Value")
    return None


def matches_schedule(instance, tag_key=INSTANCE_TAG_KEY, tag_value=INSTANCE_TAG_VALUE, states=INSTANCE_STATES) -> bool:
    """True when the instance record carries tag_key=tag_value and is in one of states."""
    state = (instance.get("State") or {}).get("Name")
    return _tag_value(instance, tag_key) == tag_value and state in states


def flatten_reservations(pages):
    """Flatten DescribeInstances pages (Reservations -> Instances) into one list."""
    instances = []
    for page in pages:
        for reservation in page.get("Reservations", []):
            instances.extend(reservation.get("Instances", []))
    return instances


def build_log_item(entry, log_id=None):
    """
    Build the DynamoDB item for one audit entry.
    Message and InstanceIds are left out entirely when empty.
    """
    item = {
        "LogId": {"S": log_id or new_log_id()},
        "Mode": {"S": str(entry["mode"]) if entry.get("mode") else "unknown"},
        "Status": {"S": entry["status"]},
        "Timestamp": {"S": entry.get("timestamp") or utc_timestamp()},
    }
    if entry.get("message"):
        item["Message"] = {"S": str(entry["message"])}
    if entry.get("instance_ids"):
        item["InstanceIds"] = {"SS": [str(i) for i in entry["instance_ids"]]}
    return item


def send_sns_notification(sns, topic_arn, instance_ids):
    """Warn subscribers before the instances go down."""
    message = f"The following EC2 instances will be stopped: {', '.join(instance_ids)}"
    response = sns.publish(TopicArn=topic_arn, Subject=SNS_SUBJECT, Message=message)
    logger.info(f"Published stop notice to {topic_arn}: {response.get('MessageId', 'unknown')}")


class CurfewHandler:
    """Starts or stops every instance tagged AutoSchedule=on and records the outcome."""

    def __init__(self, ec2, dynamodb, sns, config: CurfewConfig):
        self.ec2 = ec2
        self.dynamodb = dynamodb
        self.sns = sns
        self.config = config

    @classmethod
    def from_env(cls):
        return cls(
            ec2=boto3.client("ec2"),
            dynamodb=boto3.client("dynamodb"),
            sns=boto3.client("sns"),
            config=CurfewConfig.from_env(),
        )

    def log_entry(self, mode, status, message=None, instance_ids=None):
        item = build_log_item(
            {
                "mode": mode,
                "status": status,
                "message": message,
                "instance_ids": instance_ids,
                "timestamp": utc_timestamp(),
            }
        )
        try:
            self.dynamodb.put_item(TableName=self.config.log_table_name, Item=item)
            logger.info(f"Wrote {status} log entry {item['LogId']['S']} to {self.config.log_table_name}")
        except Exception as e:
            logger.error(f"Failed to write log entry to {self.config.log_table_name}: {e}")
            raise

    def get_tagged_instances(self):
        paginator = self.ec2.get_paginator("describe_instances")
        pages = paginator.paginate(
            Filters=[
                {"Name": f"tag:{self.config.tag_key}", "Values": [self.config.tag_value]},
                {"Name": "instance-state-name", "Values": list(INSTANCE_STATES)},
            ]
        )
        return [
            i
            for i in flatten_reservations(pages)
            if matches_schedule(i, self.config.tag_key, self.config.tag_value)
        ]

    def handle(self, event):
        mode = resolve_mode(event, self.config.default_mode)

        if mode not in VALID_MODES:
            message = f'Invalid mode: {mode}. Use "start" or "stop".'
            logger.error(message)
            self.log_entry(mode, "error", message=message)
            raise InvalidModeError(message)

        try:
            instances = self.get_tagged_instances()

            if not instances:
                self.log_entry(mode, "no-instances", message="No matching instances found.")
                logger.info("No matching instances found.")
                return {"ok": True, "mode": mode, "status": "no-instances", "instance_ids": []}

            instance_ids = [i["InstanceId"] for i in instances]
            logger.info(f"Found instances: {', '.join(instance_ids)}")

            if mode == "start":
                self.ec2.start_instances(InstanceIds=instance_ids)
                status = "started"
            else:
                # Notify first; a failed publish aborts the stop.
                if self.config.sns_topic_arn:
                    send_sns_notification(self.sns, self.config.sns_topic_arn, instance_ids)
                self.ec2.stop_instances(InstanceIds=instance_ids)
                status = "stopped"

            self.log_entry(mode, status, instance_ids=instance_ids)
            logger.info(f"{status.capitalize()} instances: {', '.join(instance_ids)}")

            return {"ok": True, "mode": mode, "status": status, "instance_ids": instance_ids}

        except Exception as e:
            logger.error(f"Error managing EC2 instances: {e}", exc_info=True)
            self.log_entry(mode, "error", message=str(e))
            raise


_handler = None


def get_handler():
    """Clients and config are built once per container and reused across warm invocations."""
    global _handler
    if _handler is None:
        _handler = CurfewHandler.from_env()
    return _handler


def lambda_handler(event, context):
    """
    EventBridge scheduled entry point.
    Expects event.detail.mode or event.mode to be 'start' or 'stop', falling back to MODE.
    """
    logger.info(f"Received event: {json.dumps(event, default=str)}")
    return get_handler().handle(event)
