"""
The Lambda Adapter & Orchestrator for the CSV Loader service.

This module is the main entry point for the AWS Lambda function. It is
responsible for:
1.  Initializing and configuring AWS Lambda Powertools (Logger, Tracer, Metrics).
2.  Parsing SQS messages containing S3 event notifications, either direct or
    forwarded through SNS.
3.  Loading every referenced object, in delivery order, through the core
    pipeline (one database transaction per object).
4.  Applying the fail-fast / continue policy. In fail-fast mode the first
    failure is re-raised so SQS redelivers the whole batch; in continue mode
    failures are logged and the remaining work proceeds.
"""

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable

from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.logging.utils import copy_config_to_registered_loggers
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.typing import LambdaContext

from .clients import ServiceClients, get_service_clients
from .config import AppConfig, get_config
from .core import LambdaDeadline, process_object
from .exceptions import (
    MissingReferenceFieldsError,
    NotificationParseError,
    get_error_context,
)
from .schemas import ObjectReference, parse_notification
from .sink import build_sink

# --- Global & Reusable Components ---
# Only Powertools utilities live at module level; configuration and clients
# are resolved lazily on the first invocation.
logger = Logger(service=os.getenv("SERVICE_NAME", "csv-loader"))
tracer = Tracer(service=os.getenv("SERVICE_NAME", "csv-loader"))
metrics = Metrics(namespace="CsvLoader", service=os.getenv("SERVICE_NAME", "csv-loader"))

# Route the library modules' stdlib loggers through the structured formatter.
copy_config_to_registered_loggers(source_logger=logger, include={"csv_loader"})


@dataclass
class DispatchSummary:
    """What one invocation did, returned to the caller and logged."""

    messages: int = 0
    objects_loaded: int = 0
    rows_inserted: int = 0
    skipped_references: int = 0
    failed_messages: list[str] = field(default_factory=list)
    failed_objects: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def dispatch_notifications(
    messages: Iterable[dict[str, Any]],
    *,
    load_object: Callable[[ObjectReference], int],
    throw_on_error: bool = True,
) -> DispatchSummary:
    """
    Load every object referenced by *messages*, strictly in delivery order.

    Malformed bodies and object load failures are logged with their context
    and then either re-raised (``throw_on_error``) or skipped. References
    missing a bucket or key are always skipped.
    """
    summary = DispatchSummary()

    for message in messages:
        summary.messages += 1
        message_id = message.get("messageId", "unknown")

        try:
            notification = parse_notification(message.get("body"))
        except NotificationParseError as e:
            metrics.add_metric(name="MalformedNotifications", unit=MetricUnit.Count, value=1)
            logger.error(
                "Failed to parse SQS message body.",
                extra={"message_id": message_id, "error": get_error_context(e)},
            )
            summary.failed_messages.append(message_id)
            if throw_on_error:
                raise
            continue

        if not notification.records:
            logger.warning(
                "Notification contains no object references. Skipping.",
                extra={"message_id": message_id, "shape": notification.shape},
            )
            continue

        for index, record in enumerate(notification.records):
            try:
                reference = ObjectReference.from_record(record)
            except MissingReferenceFieldsError as e:
                summary.skipped_references += 1
                metrics.add_metric(
                    name="SkippedObjectReferences", unit=MetricUnit.Count, value=1
                )
                logger.warning(
                    "S3 record is missing bucket or key. Skipping.",
                    extra={
                        "message_id": message_id,
                        "record_index": index,
                        "error": get_error_context(e),
                    },
                )
                continue

            log_extra = {
                "bucket": reference.bucket,
                "key": reference.normalized_key,
                "message_id": message_id,
                "shape": notification.shape,
            }
            try:
                rows = load_object(reference)
            except Exception as e:
                summary.failed_objects.append(
                    f"{reference.bucket}/{reference.normalized_key}"
                )
                metrics.add_metric(
                    name="ObjectLoadFailures", unit=MetricUnit.Count, value=1
                )
                logger.exception(
                    "Failed to load object.",
                    extra={**log_extra, "error": get_error_context(e)},
                )
                if throw_on_error:
                    raise
                continue

            summary.objects_loaded += 1
            summary.rows_inserted += rows
            metrics.add_metric(name="ObjectsLoaded", unit=MetricUnit.Count, value=1)
            metrics.add_metric(name="RowsInserted", unit=MetricUnit.Count, value=rows)
            logger.info(
                "Object loaded successfully.",
                extra={**log_extra, "rows_inserted": rows},
            )

    return summary


def process_event(
    event: dict,
    context: LambdaContext | None,
    *,
    config: AppConfig,
    clients: ServiceClients,
) -> dict[str, Any]:
    """Process one SQS event with explicit dependencies."""
    logger.setLevel(config.log_level)
    copy_config_to_registered_loggers(
        source_logger=logger, log_level=config.log_level, include={"csv_loader"}
    )
    metrics.add_dimension(name="environment", value=config.environment)

    sqs_records: list[dict] = event.get("Records") or []
    if not sqs_records:
        logger.warning("Event did not contain any SQS records. Exiting gracefully.")
        return DispatchSummary().to_dict()

    logger.info(
        "Starting SQS batch processing",
        extra={
            "sqs_messages": len(sqs_records),
            "table": config.db_table,
            "row_format": config.row_format,
            "batch_size": config.batch_size,
            "throw_on_error": config.throw_on_error,
        },
    )

    sink = build_sink(config)
    deadline = (
        LambdaDeadline(context, config.timeout_guard_threshold_ms)
        if context is not None
        else None
    )

    def load(reference: ObjectReference) -> int:
        return process_object(
            reference.bucket,
            reference.key,
            s3_client=clients.s3,
            database=clients.database,
            sink=sink,
            batch_size=config.batch_size,
            chunk_size=config.read_chunk_size_bytes,
            deadline=deadline,
        )

    summary = dispatch_notifications(
        sqs_records, load_object=load, throw_on_error=config.throw_on_error
    )

    logger.info("Finished SQS batch processing", extra=summary.to_dict())
    return summary.to_dict()


@logger.inject_lambda_context()
@tracer.capture_lambda_handler
@metrics.log_metrics(capture_cold_start_metric=True)
def handler(event: dict, context: LambdaContext) -> dict[str, Any]:
    """Main Lambda handler for SQS events carrying S3 notifications."""
    return process_event(
        event, context, config=get_config(), clients=get_service_clients()
    )
