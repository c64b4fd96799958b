"""AWS Lambda entry point for Feed Digest."""

import json
import os
from datetime import UTC, datetime
from typing import Any

import boto3
from botocore.exceptions import ClientError

from .config import ProcessorConfig, Settings
from .lark import LarkNotifier
from .lark_base import LarkBaseFeedSource
from .logging_config import create_execution_logger, setup_structured_logging
from .models import RunReport
from .processor import FeedPipeline
from .rss import FeedReader
from .storage import build_config_store
from .summarize import Summarizer

METRICS_NAMESPACE = "Feed-Digest"
SECRET_KEYS = ("api_key", "apiKey", "llm_api_key", "openai_api_key", "anthropic_api_key")

setup_structured_logging(os.getenv("LOG_LEVEL", "INFO"))


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """
    Run one batch over all enabled feeds, new articles only.

    Invoked by an EventBridge schedule, or over HTTP (function URL / API
    Gateway) in which case a configured CRON_SECRET must be presented as a
    bearer token.

    Args:
        event: Lambda event data
        context: Lambda context object

    Returns:
        Response dictionary with status and the run report
    """
    execution_id = f"lambda_{datetime.now(UTC).strftime('%Y%m%d_%H%M%S_%f')}"
    main_logger = create_execution_logger("main", execution_id)
    main_logger.log_execution_start(
        lambda_request_id=getattr(context, "aws_request_id", "unknown"),
        lambda_function_name=getattr(context, "function_name", "unknown"),
    )

    if not is_authorized(event, os.getenv("CRON_SECRET", "")):
        main_logger.error("Unauthorized cron request")
        return _response(401, {"error": "Unauthorized"})

    report = RunReport()
    try:
        settings = Settings()
        api_key = None
        if settings.llm_api_key_secret_name:
            api_key = get_secret_value(
                settings.llm_api_key_secret_name, settings.aws_region, execution_id
            )
        llm_config = settings.get_llm_config(api_key)

        store = build_config_store(settings, execution_id)
        feeds_config = store.load()
        enabled_count = len(feeds_config.enabled_feeds())
        main_logger.info(
            f"Loaded configuration: {len(feeds_config.feeds)} feeds, {enabled_count} enabled",
            feed_count=len(feeds_config.feeds),
            enabled_count=enabled_count,
        )

        processor_config = ProcessorConfig.from_feeds_configuration(
            feeds_config, articles_per_feed=settings.articles_per_feed, only_new=True
        )
        processor_config.validate()

        feed_source = None
        if feeds_config.lark_base:
            feed_source = LarkBaseFeedSource(
                feeds_config.lark_base, execution_id=execution_id
            )

        pipeline = FeedPipeline(
            reader=FeedReader(execution_id=execution_id),
            summarizer=Summarizer(llm_config, execution_id=execution_id),
            notifier=LarkNotifier(execution_id=execution_id),
            watermark_store=store,
            feed_source=feed_source,
            execution_id=execution_id,
        )
        report = pipeline.process_all_feeds(processor_config, only_new=True)

        send_cloudwatch_metrics(report, settings.aws_region, execution_id)
        main_logger.log_execution_end(success=True, metrics=report.to_dict())

        return _response(
            200,
            {
                "success": True,
                "execution_id": execution_id,
                "feeds_processed": report.success_count,
                "summaries_sent": report.total_summaries,
                "failures": report.failure_count,
                "errors": report.errors,
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )

    except Exception as e:
        error_msg = f"Critical error in Lambda handler: {str(e)}"
        main_logger.error(error_msg, error=str(e))
        report.errors.append(error_msg)

        send_cloudwatch_metrics(
            report,
            settings.aws_region if "settings" in locals() else "us-east-1",
            execution_id,
        )
        main_logger.log_execution_end(success=False, error=error_msg)

        return _response(
            500,
            {
                "success": False,
                "execution_id": execution_id,
                "error": error_msg,
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )


def is_authorized(event: dict[str, Any], cron_secret: str) -> bool:
    """Check the bearer token of HTTP invocations; scheduled events pass."""
    if not cron_secret:
        return True
    headers = event.get("headers") if isinstance(event, dict) else None
    if headers is None:
        return True
    normalized = {str(k).lower(): v for k, v in headers.items()}
    return normalized.get("authorization") == f"Bearer {cron_secret}"


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {"statusCode": status_code, "body": json.dumps(body, ensure_ascii=False)}


def get_secret_value(secret_name: str, aws_region: str, execution_id: str) -> str:
    """
    Retrieve the LLM API key from AWS Secrets Manager.

    Supports both plain string and JSON secrets. The value itself is never
    logged.

    Args:
        secret_name: Name of the secret in Secrets Manager
        aws_region: AWS region for Secrets Manager client
        execution_id: Execution ID for logging context

    Returns:
        The secret value

    Raises:
        RuntimeError: If the secret cannot be retrieved or has no usable value
        ValueError: If secret name or region is empty
    """
    secrets_logger = create_execution_logger("secrets_manager", execution_id)

    if not secret_name or not secret_name.strip():
        raise ValueError("Secret name cannot be empty")

    if not aws_region or not aws_region.strip():
        raise ValueError("AWS region cannot be empty")

    try:
        secrets_logger.info(f"Retrieving API key from Secrets Manager: {secret_name}")
        secrets_client = boto3.client("secretsmanager", region_name=aws_region)
        response = secrets_client.get_secret_value(SecretId=secret_name)

        if "SecretString" not in response:
            raise ValueError(f"Secret {secret_name} does not contain a string value")

        secret_value = response["SecretString"]
        if not secret_value or not secret_value.strip():
            raise ValueError(f"Secret {secret_name} contains empty value")

        try:
            secret_data = json.loads(secret_value)
        except json.JSONDecodeError:
            secrets_logger.info("Retrieved API key from plain text secret")
            return secret_value.strip()

        if not isinstance(secret_data, dict):
            raise ValueError(f"JSON secret {secret_name} must be an object")

        for key in SECRET_KEYS:
            value = secret_data.get(key)
            if isinstance(value, str) and value.strip():
                secrets_logger.info("Retrieved API key from JSON secret")
                return value.strip()

        for value in secret_data.values():
            if isinstance(value, str) and value.strip():
                secrets_logger.info("Using first available value from JSON secret")
                return value.strip()

        raise ValueError(f"No valid value found in JSON secret {secret_name}")

    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        secrets_logger.error(
            f"AWS Secrets Manager error retrieving {secret_name}: {error_code}"
        )
        raise RuntimeError(f"Failed to retrieve secret {secret_name}") from e
    except ValueError as e:
        secrets_logger.error(f"Invalid secret format for {secret_name}: {e}")
        raise RuntimeError(f"Invalid secret format for {secret_name}") from e


def send_cloudwatch_metrics(
    report: RunReport, aws_region: str, execution_id: str
) -> None:
    """
    Publish the run report as custom CloudWatch metrics.

    Failures are logged and never raised; metrics must not break a run.
    """
    metrics_logger = create_execution_logger("cloudwatch_metrics", execution_id)

    try:
        cloudwatch = boto3.client("cloudwatch", region_name=aws_region)

        execution_success = report.failure_count == 0 and not report.errors
        dimensions = [{"Name": "ExecutionId", "Value": execution_id}]
        status_dimensions = [
            {"Name": "Status", "Value": "Success" if execution_success else "Failure"}
        ]
        attempted = report.success_count + report.failure_count

        metric_data = [
            {
                "MetricName": "FeedsSucceeded",
                "Value": report.success_count,
                "Unit": "Count",
                "Dimensions": dimensions,
            },
            {
                "MetricName": "FeedsFailed",
                "Value": report.failure_count,
                "Unit": "Count",
                "Dimensions": dimensions,
            },
            {
                "MetricName": "SummariesSent",
                "Value": report.total_summaries,
                "Unit": "Count",
                "Dimensions": dimensions,
            },
            {
                "MetricName": "Errors",
                "Value": len(report.errors),
                "Unit": "Count",
                "Dimensions": dimensions,
            },
            {
                "MetricName": "ExecutionSuccess",
                "Value": 1 if execution_success else 0,
                "Unit": "Count",
                "Dimensions": status_dimensions,
            },
            {
                "MetricName": "FeedSuccessRate",
                "Value": (report.success_count / max(attempted, 1)) * 100,
                "Unit": "Percent",
                "Dimensions": dimensions,
            },
        ]

        cloudwatch.put_metric_data(Namespace=METRICS_NAMESPACE, MetricData=metric_data)
        metrics_logger.info(
            "Successfully sent metrics to CloudWatch",
            metrics_sent=len(metric_data),
            namespace=METRICS_NAMESPACE,
            execution_success=execution_success,
        )

    except Exception as e:
        metrics_logger.error(f"Failed to send CloudWatch metrics: {e}", error=str(e))
