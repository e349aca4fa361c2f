#!/usr/bin/env python3
"""
Error handling framework for the evaluation pipeline Lambda functions

Provides the pipeline's error taxonomy plus standardized logging, metrics
and response formatting for Step Functions and API Gateway callers.
"""

import json
import re
import traceback
import time
from typing import Dict, Any, Optional, Callable, List
from datetime import datetime, timezone
from functools import wraps
from enum import Enum
import boto3
from botocore.exceptions import ClientError, BotoCoreError
import logging

from constants import AWS_REGION


class ErrorSeverity(Enum):
    """Error severity levels for proper escalation"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ErrorCategory(Enum):
    """Error categories for monitoring and alerting"""
    USER_INPUT = "USER_INPUT"
    EXTERNAL_SERVICE = "EXTERNAL_SERVICE"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CONFIGURATION = "CONFIGURATION"
    RESOURCE_LIMIT = "RESOURCE_LIMIT"
    BUSINESS_LOGIC = "BUSINESS_LOGIC"


class EvaluatorError(Exception):
    """Base exception for evaluation pipeline errors"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.INTERNAL_ERROR,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM, details: Optional[Dict] = None,
                 correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.correlation_id = correlation_id
        self.timestamp = datetime.now(timezone.utc).isoformat()


class ValidationError(EvaluatorError):
    """Input validation errors"""
    def __init__(self, message: str, field: str = None, **kwargs):
        super().__init__(message, ErrorCategory.USER_INPUT, ErrorSeverity.LOW, **kwargs)
        self.field = field


class ExternalServiceError(EvaluatorError):
    """External service failures (Transcribe, Bedrock, S3, DynamoDB)"""
    def __init__(self, message: str, service: str, severity: ErrorSeverity = ErrorSeverity.HIGH, **kwargs):
        super().__init__(message, ErrorCategory.EXTERNAL_SERVICE, severity, **kwargs)
        self.service = service


class BusinessLogicError(EvaluatorError):
    """Business logic violations"""
    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.BUSINESS_LOGIC, ErrorSeverity.MEDIUM, **kwargs)


class JobTimeoutError(BusinessLogicError):
    """Job ran past its wall-clock budget"""
    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)
        self.severity = ErrorSeverity.HIGH


class TransientPollError(ExternalServiceError):
    """Status query failed in a way worth re-checking later (throttling, 5xx, network)"""
    def __init__(self, message: str, **kwargs):
        super().__init__(message, service="transcribe", severity=ErrorSeverity.LOW, **kwargs)


class TranscriptionFailed(ExternalServiceError):
    """Transcription job ended in FAILED, or could not be submitted"""
    def __init__(self, message: str, failure_reason: str = "", **kwargs):
        super().__init__(message, service="transcribe", **kwargs)
        self.failure_reason = failure_reason or message


class FormattingError(EvaluatorError):
    """Raw transcription output lacks the structure the formatter needs"""
    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.BUSINESS_LOGIC, ErrorSeverity.HIGH, **kwargs)


class ScoringValidationError(EvaluatorError):
    """Scoring output violated the rubric schema after the corrective retry"""
    def __init__(self, message: str, violations: Optional[List[str]] = None, attempts: int = 0, **kwargs):
        details = kwargs.pop("details", None) or {}
        details.setdefault("violations", list(violations or []))
        details.setdefault("attempts", attempts)
        super().__init__(message, ErrorCategory.BUSINESS_LOGIC, ErrorSeverity.HIGH, details=details, **kwargs)
        self.violations = list(violations or [])
        self.attempts = attempts


class PersistenceError(ExternalServiceError):
    """Evaluation or profile write failed after retries"""
    def __init__(self, message: str, **kwargs):
        super().__init__(message, service="dynamodb", **kwargs)


class AggregationInvariantError(EvaluatorError):
    """Aggregator received or produced totals that break a scoring invariant"""
    def __init__(self, message: str, **kwargs):
        super().__init__(message, ErrorCategory.INTERNAL_ERROR, ErrorSeverity.CRITICAL, **kwargs)


class ErrorHandler:
    """Centralized error handling and logging"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.cloudwatch = None

        try:
            self.cloudwatch = boto3.client('cloudwatch', region_name=AWS_REGION)
        except Exception:
            self.logger.warning("CloudWatch client not available - metrics disabled")

    def handle_error(self, error: Exception, context: Optional[Dict] = None) -> Dict[str, Any]:
        """Handle and log errors with proper categorization"""

        correlation_id = self._get_correlation_id(context)

        if isinstance(error, EvaluatorError):
            return self._handle_known_error(error, correlation_id)
        else:
            return self._handle_unknown_error(error, context, correlation_id)

    def _handle_known_error(self, error: EvaluatorError, correlation_id: str) -> Dict[str, Any]:
        """Handle known application errors"""

        error_data = {
            'error_id': f"ERR_{int(time.time())}",
            'message': error.message,
            'error_type': type(error).__name__,
            'category': error.category.value,
            'severity': error.severity.value,
            'details': error.details,
            'correlation_id': correlation_id,
            'timestamp': error.timestamp
        }

        if error.severity in [ErrorSeverity.CRITICAL, ErrorSeverity.HIGH]:
            self.logger.error("Application error", extra={'error_data': error_data})
        elif error.severity == ErrorSeverity.MEDIUM:
            self.logger.warning("Application warning", extra={'error_data': error_data})
        else:
            self.logger.info("Application info", extra={'error_data': error_data})

        self._send_error_metric(error.category.value, error.severity.value)

        return self._format_error_response(error_data)

    def _handle_unknown_error(self, error: Exception, context: Optional[Dict],
                              correlation_id: str) -> Dict[str, Any]:
        """Handle unexpected errors"""

        category, severity = self._categorize_error(error)

        error_data = {
            'error_id': f"ERR_{int(time.time())}",
            'message': str(error),
            'error_type': type(error).__name__,
            'category': category.value,
            'severity': severity.value,
            'traceback': traceback.format_exc(),
            'context': context or {},
            'correlation_id': correlation_id,
            'timestamp': datetime.now(timezone.utc).isoformat()
        }

        self.logger.error("Unhandled error", extra={'error_data': error_data})
        self._send_error_metric(category.value, severity.value)

        return self._format_error_response(error_data, include_traceback=False)

    def _categorize_error(self, error: Exception) -> tuple[ErrorCategory, ErrorSeverity]:
        """Categorize unknown errors based on type"""

        if isinstance(error, (ClientError, BotoCoreError)):
            return ErrorCategory.EXTERNAL_SERVICE, ErrorSeverity.HIGH
        elif isinstance(error, (ValueError, TypeError)):
            return ErrorCategory.USER_INPUT, ErrorSeverity.LOW
        elif isinstance(error, KeyError):
            return ErrorCategory.CONFIGURATION, ErrorSeverity.MEDIUM
        elif isinstance(error, MemoryError):
            return ErrorCategory.RESOURCE_LIMIT, ErrorSeverity.CRITICAL
        else:
            return ErrorCategory.INTERNAL_ERROR, ErrorSeverity.HIGH

    def _send_error_metric(self, category: str, severity: str):
        """Send error metrics to CloudWatch"""
        if not self.cloudwatch:
            return

        try:
            self.cloudwatch.put_metric_data(
                Namespace='CounselorQA/Errors',
                MetricData=[
                    {
                        'MetricName': 'ErrorCount',
                        'Dimensions': [
                            {'Name': 'Category', 'Value': category},
                            {'Name': 'Severity', 'Value': severity}
                        ],
                        'Value': 1,
                        'Unit': 'Count',
                        'Timestamp': datetime.now(timezone.utc)
                    }
                ]
            )
        except Exception as e:
            self.logger.warning(f"Failed to send CloudWatch metric: {e}")

    def _get_correlation_id(self, context: Optional[Dict]) -> str:
        """Extract or generate correlation ID"""
        if context and 'correlation_id' in context:
            return context['correlation_id']
        elif context and 'aws_request_id' in context:
            return context['aws_request_id']
        else:
            return f"corr_{int(time.time())}"

    def _format_error_response(self, error_data: Dict, include_traceback: bool = False) -> Dict[str, Any]:
        """Format error response for API"""

        response = {
            'error': {
                'error_id': error_data['error_id'],
                'message': error_data['message'],
                'error_type': error_data['error_type'],
                'category': error_data['category'],
                'timestamp': error_data['timestamp'],
                'correlation_id': error_data['correlation_id']
            }
        }

        if include_traceback and error_data.get('traceback'):
            response['error']['traceback'] = error_data['traceback']

        return response


def lambda_error_handler(correlation_id_field: str = 'aws_request_id'):
    """Decorator for Lambda function error handling"""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
            error_handler = ErrorHandler()

            correlation_id = getattr(context, correlation_id_field, f"req_{int(time.time())}")
            context_dict = {
                'correlation_id': correlation_id,
                'function_name': getattr(context, 'function_name', 'unknown'),
                'aws_request_id': getattr(context, 'aws_request_id', None)
            }

            try:
                logger = logging.getLogger()
                logger.info("Function invoked", extra={
                    'correlation_id': correlation_id,
                    'event_keys': list(event.keys()) if isinstance(event, dict) else 'non-dict'
                })

                result = func(event, context)

                logger.info("Function completed successfully", extra={
                    'correlation_id': correlation_id
                })

                return result

            except Exception as e:
                error_response = error_handler.handle_error(e, context_dict)

                # Step Functions events don't have 'httpMethod' or 'requestContext'
                is_api_gateway = isinstance(event, dict) and (
                    'httpMethod' in event or
                    'requestContext' in event or
                    'headers' in event
                )

                if is_api_gateway:
                    if isinstance(e, ValidationError):
                        status_code = 400
                    elif isinstance(e, BusinessLogicError):
                        status_code = 409
                    else:
                        status_code = 500
                    return {
                        'statusCode': status_code,
                        'headers': {
                            'Content-Type': 'application/json',
                            'X-Correlation-ID': correlation_id
                        },
                        'body': json.dumps(error_response)
                    }
                else:
                    # For Step Functions, raise the error so it can be caught/retried
                    raise

        return wrapper
    return decorator


class InputValidator:
    """Input validation utilities"""

    @staticmethod
    def validate_required_fields(data: Dict, required_fields: list, context: str = "input") -> None:
        """Validate required fields are present"""
        missing_fields = [field for field in required_fields if not data.get(field)]

        if missing_fields:
            raise ValidationError(
                f"Missing required fields in {context}: {', '.join(missing_fields)}",
                details={'missing_fields': missing_fields, 'context': context}
            )

    @staticmethod
    def validate_string_field(value: Any, field_name: str, min_length: int = 1,
                              max_length: int = 10000) -> str:
        """Validate string field with length constraints"""
        if not isinstance(value, str):
            raise ValidationError(f"{field_name} must be a string", field=field_name)

        value = value.strip()

        if len(value) < min_length:
            raise ValidationError(
                f"{field_name} must be at least {min_length} characters",
                field=field_name
            )

        if len(value) > max_length:
            raise ValidationError(
                f"{field_name} must be no more than {max_length} characters",
                field=field_name
            )

        return value

    @staticmethod
    def validate_bucket_name(bucket: Any) -> str:
        """Validate S3 bucket name format"""
        if not isinstance(bucket, str) or not 3 <= len(bucket) <= 63:
            raise ValidationError("bucket must be 3-63 characters", field="bucket")

        if not re.match(r'^[a-z0-9][a-z0-9.-]*[a-z0-9]$', bucket):
            raise ValidationError(
                "bucket must be lowercase letters, numbers, dots and hyphens",
                field="bucket",
                details={'provided_value': bucket}
            )

        return bucket

    @staticmethod
    def validate_s3_key(key: Any, field_name: str = "key") -> str:
        """Validate S3 object key and reject path traversal"""
        if not isinstance(key, str) or not key:
            raise ValidationError(f"{field_name} must be a non-empty string", field=field_name)

        if '..' in key or '//' in key or '\\' in key:
            raise ValidationError(
                f"{field_name} contains invalid path segments",
                field=field_name,
                details={'provided_value': key}
            )

        if len(key) > 1024:
            raise ValidationError(f"{field_name} must be no more than 1024 characters", field=field_name)

        return key


# Utility functions for common error scenarios
def handle_bedrock_error(error: Exception, model_name: str, correlation_id: str = None) -> None:
    """Handle Bedrock-specific errors with proper categorization"""
    if isinstance(error, ClientError):
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')

        if error_code in ['ThrottlingException', 'ServiceQuotaExceededException']:
            raise ExternalServiceError(
                f"Bedrock rate limit exceeded for model {model_name}",
                service="bedrock",
                details={'error_code': error_code, 'model': model_name},
                correlation_id=correlation_id
            )
        elif error_code in ['ValidationException']:
            raise BusinessLogicError(
                f"Invalid request to Bedrock model {model_name}",
                details={'error_code': error_code, 'model': model_name},
                correlation_id=correlation_id
            )
        else:
            raise ExternalServiceError(
                f"Bedrock service error: {error}",
                service="bedrock",
                details={'error_code': error_code, 'model': model_name},
                correlation_id=correlation_id
            )
    else:
        raise ExternalServiceError(
            f"Unexpected Bedrock error: {error}",
            service="bedrock",
            details={'model': model_name},
            correlation_id=correlation_id
        )


def handle_s3_error(error: Exception, bucket: str, key: str = None, correlation_id: str = None) -> None:
    """Handle S3-specific errors"""
    if isinstance(error, ClientError):
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')

        if error_code == 'NoSuchBucket':
            raise ExternalServiceError(
                f"S3 bucket '{bucket}' does not exist",
                service="s3",
                details={'bucket': bucket, 'key': key},
                correlation_id=correlation_id
            )
        elif error_code == 'NoSuchKey':
            raise ExternalServiceError(
                f"S3 object '{key}' not found in bucket '{bucket}'",
                service="s3",
                details={'bucket': bucket, 'key': key},
                correlation_id=correlation_id
            )
        elif error_code == 'AccessDenied':
            raise ExternalServiceError(
                "Access denied to S3 resource",
                service="s3",
                details={'bucket': bucket, 'key': key},
                severity=ErrorSeverity.CRITICAL,
                correlation_id=correlation_id
            )
        else:
            raise ExternalServiceError(
                f"S3 service error: {error}",
                service="s3",
                details={'error_code': error_code, 'bucket': bucket, 'key': key},
                correlation_id=correlation_id
            )
    else:
        raise ExternalServiceError(
            f"Unexpected S3 error: {error}",
            service="s3",
            details={'bucket': bucket, 'key': key},
            correlation_id=correlation_id
        )
