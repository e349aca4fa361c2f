#!/usr/bin/env python3
"""
Retry mechanism with exponential backoff for external service calls

Provides resilient calling patterns for S3, DynamoDB, Transcribe and
Step Functions. Bedrock calls retry inside helper.bedrock_converse.
"""

import time
import random
import logging
from typing import Callable, Any, Optional, List
from dataclasses import dataclass
from enum import Enum
from botocore.exceptions import ClientError, EndpointConnectionError, ConnectionClosedError


class RetryStrategy(Enum):
    """Different retry strategies for different scenarios"""
    EXPONENTIAL_BACKOFF = "exponential_backoff"
    LINEAR_BACKOFF = "linear_backoff"
    FIXED_DELAY = "fixed_delay"


@dataclass
class RetryConfig:
    """Configuration for retry behavior"""
    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF

    # Error codes that should trigger retries
    retryable_errors: List[str] = None

    def __post_init__(self):
        if self.retryable_errors is None:
            self.retryable_errors = [
                'ThrottlingException',
                'ServiceUnavailableException',
                'InternalServerError',
                'InternalFailureException',
                'RequestTimeout',
                'TooManyRequestsException',
                'LimitExceededException',
                'ProvisionedThroughputExceededException'
            ]


def is_transient_error(error: Exception, retryable_errors: Optional[List[str]] = None) -> bool:
    """True for throttling, 5xx and connection-level failures"""
    if isinstance(error, ClientError):
        error_code = error.response.get('Error', {}).get('Code', '')
        if retryable_errors is not None and error_code in retryable_errors:
            return True
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        return status >= 500 or status == 429

    return isinstance(error, (EndpointConnectionError, ConnectionClosedError,
                              ConnectionError, TimeoutError))


class RetryHandler:
    """Main retry handler with multiple strategies"""

    def __init__(self, config: RetryConfig = None, logger: logging.Logger = None,
                 sleep: Callable[[float], None] = None):
        self.config = config or RetryConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.sleep = sleep or time.sleep

    def retry_call(self, func: Callable, *args, custom_config: RetryConfig = None, **kwargs) -> Any:
        """Execute function with retry logic"""

        config = custom_config or self.config
        last_exception = None

        for attempt in range(config.max_attempts):
            try:
                return func(*args, **kwargs)

            except Exception as e:
                last_exception = e

                # Check if error is retryable
                if not self._is_retryable_error(e, config):
                    self.logger.info(f"Non-retryable error on attempt {attempt + 1}: {e}")
                    raise

                # Don't retry on last attempt
                if attempt == config.max_attempts - 1:
                    break

                delay = self._calculate_delay(attempt, config)

                self.logger.warning(
                    f"Attempt {attempt + 1} failed, retrying in {delay:.2f}s: {e}",
                    extra={
                        'attempt': attempt + 1,
                        'max_attempts': config.max_attempts,
                        'delay': delay,
                        'error_type': type(e).__name__
                    }
                )

                self.sleep(delay)

        # All attempts failed
        self.logger.error(
            f"All {config.max_attempts} attempts failed",
            extra={'final_error': str(last_exception)}
        )
        raise last_exception

    def _is_retryable_error(self, error: Exception, config: RetryConfig) -> bool:
        """Determine if error should trigger a retry"""

        # AWS ClientError only retries on the configured codes
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', '')
            return error_code in config.retryable_errors

        return is_transient_error(error)

    def _calculate_delay(self, attempt: int, config: RetryConfig) -> float:
        """Calculate delay based on retry strategy"""

        if config.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            delay = config.base_delay * (config.exponential_base ** attempt)
        elif config.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = config.base_delay * (attempt + 1)
        else:  # FIXED_DELAY
            delay = config.base_delay

        delay = min(delay, config.max_delay)

        if config.jitter:
            jitter_range = delay * 0.1  # 10% jitter
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)


# Pre-configured retry policies for common services
s3_retry_config = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=10.0,
    strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
    retryable_errors=[
        'InternalError',
        'ServiceUnavailable',
        'SlowDown',
        'RequestTimeout'
    ]
)

dynamodb_retry_config = RetryConfig(
    max_attempts=5,
    base_delay=0.1,
    max_delay=5.0,
    strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
    retryable_errors=[
        'ProvisionedThroughputExceededException',
        'ThrottlingException',
        'InternalServerError',
        'ServiceUnavailableException',
        'TransactionConflictException',
        'RequestLimitExceeded'
    ]
)

transcribe_retry_config = RetryConfig(
    max_attempts=4,
    base_delay=1.0,
    max_delay=20.0,
    strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
    retryable_errors=[
        'LimitExceededException',
        'InternalFailureException',
        'ThrottlingException',
        'ServiceUnavailableException'
    ]
)

stepfunctions_retry_config = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=5.0,
    strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
    retryable_errors=[
        'ThrottlingException',
        'ServiceUnavailableException',
        'InternalServerError'
    ]
)


class S3RetryWrapper:
    """Wrapper for S3 calls with built-in retry logic"""

    def __init__(self, client, sleep: Callable[[float], None] = None):
        self.client = client
        self.retry_handler = RetryHandler(s3_retry_config, sleep=sleep)

    def put_object(self, bucket: str, key: str, body: Any, **kwargs) -> dict:
        """Put S3 object with retry logic"""
        return self.retry_handler.retry_call(
            self.client.put_object, Bucket=bucket, Key=key, Body=body, **kwargs
        )

    def get_object(self, bucket: str, key: str, **kwargs) -> dict:
        """Get S3 object with retry logic"""
        return self.retry_handler.retry_call(self.client.get_object, Bucket=bucket, Key=key, **kwargs)

    def delete_object(self, bucket: str, key: str, **kwargs) -> dict:
        """Delete S3 object with retry logic"""
        return self.retry_handler.retry_call(self.client.delete_object, Bucket=bucket, Key=key, **kwargs)


class DynamoDBRetryWrapper:
    """Wrapper for DynamoDB table calls with built-in retry logic"""

    def __init__(self, table_name: str, resource, sleep: Callable[[float], None] = None):
        self.table_name = table_name
        self.table = resource.Table(table_name)
        self.retry_handler = RetryHandler(dynamodb_retry_config, sleep=sleep)

    def get_item(self, key: dict = None, Key: dict = None, **kwargs) -> dict:
        """Get DynamoDB item with retry logic"""
        if key is None and Key is not None:
            key = Key
        if key is None:
            raise ValueError("get_item requires `key` (or `Key`).")
        return self.retry_handler.retry_call(self.table.get_item, Key=key, **kwargs)

    def update_item(self, key: dict = None, Key: dict = None, **kwargs) -> dict:
        """Update DynamoDB item with retry logic"""
        if key is None and Key is not None:
            key = Key
        if key is None:
            raise ValueError("update_item requires `key` (or `Key`).")
        return self.retry_handler.retry_call(self.table.update_item, Key=key, **kwargs)

    def query(self, **kwargs) -> dict:
        """Query DynamoDB table with retry logic"""
        return self.retry_handler.retry_call(self.table.query, **kwargs)
