#!/usr/bin/env python3
"""
Unit tests for error handling and validation components

Tests the error handling framework, input validation, and retry mechanisms.
"""

import unittest
import json
from unittest.mock import Mock, patch
from botocore.exceptions import ClientError, EndpointConnectionError

# Add path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / 'evaluator'))

from utils.error_handler import (
    ErrorHandler, EvaluatorError, ValidationError, ExternalServiceError,
    BusinessLogicError, InputValidator, lambda_error_handler,
    ErrorCategory, ErrorSeverity, TransientPollError, TranscriptionFailed,
    FormattingError, ScoringValidationError, PersistenceError, AggregationInvariantError,
    handle_bedrock_error, handle_s3_error
)
from utils.retry_handler import (
    RetryHandler, RetryConfig, RetryStrategy, is_transient_error,
    S3RetryWrapper, DynamoDBRetryWrapper
)


def client_error(code, status=400, operation='test'):
    return ClientError(
        error_response={'Error': {'Code': code}, 'ResponseMetadata': {'HTTPStatusCode': status}},
        operation_name=operation
    )


class TestErrorHandler(unittest.TestCase):
    """Test error handling framework"""

    def setUp(self):
        patcher = patch('utils.error_handler.boto3.client')
        self.mock_boto3 = patcher.start()
        self.addCleanup(patcher.stop)
        self.error_handler = ErrorHandler()

    def test_handle_validation_error(self):
        """Test handling of validation errors"""
        error = ValidationError("Invalid field", field="testField")
        context = {'correlation_id': 'test-123'}

        result = self.error_handler.handle_error(error, context)

        self.assertIn('error', result)
        self.assertEqual(result['error']['category'], 'USER_INPUT')
        self.assertEqual(result['error']['correlation_id'], 'test-123')

    def test_handle_external_service_error(self):
        """Test handling of external service errors"""
        error = ExternalServiceError("Service unavailable", service="transcribe")
        result = self.error_handler.handle_error(error)

        self.assertIn('error', result)
        self.assertEqual(result['error']['category'], 'EXTERNAL_SERVICE')

    def test_handle_scoring_validation_error_reports_type(self):
        """Domain errors keep their own type name in the response"""
        error = ScoringValidationError("bad output", violations=["Missing result for 'Tone'"], attempts=2)
        result = self.error_handler.handle_error(error)

        self.assertEqual(result['error']['error_type'], 'ScoringValidationError')
        self.assertEqual(result['error']['category'], 'BUSINESS_LOGIC')

    def test_handle_unknown_error(self):
        """Test handling of unknown/unexpected errors"""
        error = ValueError("Something went wrong")
        result = self.error_handler.handle_error(error)

        self.assertIn('error', result)
        self.assertIn('error_id', result['error'])
        self.assertNotIn('traceback', result['error'])

    def test_categorize_client_error(self):
        """Test categorization of AWS ClientError"""
        category, severity = self.error_handler._categorize_error(client_error('ThrottlingException'))
        self.assertEqual(category, ErrorCategory.EXTERNAL_SERVICE)
        self.assertEqual(severity, ErrorSeverity.HIGH)

    def test_send_cloudwatch_metric(self):
        """Test CloudWatch metric sending"""
        mock_cloudwatch = Mock()
        self.mock_boto3.return_value = mock_cloudwatch

        error_handler = ErrorHandler()
        error_handler._send_error_metric('TEST_CATEGORY', 'HIGH')

        mock_cloudwatch.put_metric_data.assert_called_once()
        kwargs = mock_cloudwatch.put_metric_data.call_args.kwargs
        self.assertEqual(kwargs['Namespace'], 'CounselorQA/Errors')

    def test_metric_failure_does_not_raise(self):
        """A failing metric call must not mask the original error"""
        mock_cloudwatch = Mock()
        mock_cloudwatch.put_metric_data.side_effect = client_error('AccessDenied')
        self.mock_boto3.return_value = mock_cloudwatch

        result = ErrorHandler().handle_error(PersistenceError("write failed"))
        self.assertEqual(result['error']['error_type'], 'PersistenceError')


class TestErrorTaxonomy(unittest.TestCase):
    """Pipeline errors map onto the shared categories"""

    def test_all_pipeline_errors_share_base(self):
        for error in [
            TransientPollError("throttled"),
            TranscriptionFailed("failed", failure_reason="bad audio"),
            FormattingError("no turns"),
            ScoringValidationError("invalid"),
            PersistenceError("write failed"),
            AggregationInvariantError("mismatch"),
        ]:
            self.assertIsInstance(error, EvaluatorError)

    def test_transient_poll_error_is_low_severity_transcribe_error(self):
        error = TransientPollError("throttled")
        self.assertIsInstance(error, ExternalServiceError)
        self.assertEqual(error.service, "transcribe")
        self.assertEqual(error.severity, ErrorSeverity.LOW)

    def test_transcription_failed_keeps_reason(self):
        error = TranscriptionFailed("Job failed", failure_reason="Unsupported media")
        self.assertEqual(error.failure_reason, "Unsupported media")
        self.assertEqual(TranscriptionFailed("Job failed").failure_reason, "Job failed")

    def test_scoring_validation_error_carries_violations(self):
        error = ScoringValidationError("invalid", violations=["a", "b"], attempts=2)
        self.assertEqual(error.violations, ["a", "b"])
        self.assertEqual(error.details['violations'], ["a", "b"])
        self.assertEqual(error.details['attempts'], 2)

    def test_aggregation_invariant_is_critical(self):
        self.assertEqual(AggregationInvariantError("x").severity, ErrorSeverity.CRITICAL)

    def test_persistence_error_is_dynamodb_service(self):
        self.assertEqual(PersistenceError("x").service, "dynamodb")


class TestInputValidator(unittest.TestCase):
    """Test input validation utilities"""

    def test_validate_required_fields_success(self):
        """Test successful validation of required fields"""
        data = {'field1': 'value1', 'field2': 'value2'}
        required = ['field1', 'field2']

        # Should not raise an exception
        InputValidator.validate_required_fields(data, required)

    def test_validate_required_fields_missing(self):
        """Test validation failure with missing fields"""
        data = {'field1': 'value1'}
        required = ['field1', 'field2']

        with self.assertRaises(ValidationError) as context:
            InputValidator.validate_required_fields(data, required)

        self.assertIn('field2', str(context.exception))

    def test_validate_string_field_success(self):
        """Test successful string field validation"""
        result = InputValidator.validate_string_field("  test value ", "testField")
        self.assertEqual(result, "test value")

    def test_validate_string_field_too_short(self):
        with self.assertRaises(ValidationError):
            InputValidator.validate_string_field("", "testField", min_length=1)

    def test_validate_string_field_too_long(self):
        with self.assertRaises(ValidationError):
            InputValidator.validate_string_field("x" * 1000, "testField", max_length=100)

    def test_validate_string_field_not_string(self):
        with self.assertRaises(ValidationError):
            InputValidator.validate_string_field(123, "testField")

    def test_validate_s3_key_rejects_traversal(self):
        self.assertEqual(InputValidator.validate_s3_key("records/a b.wav"), "records/a b.wav")
        for invalid in ["", "records/../secret", "records//x.wav", 42]:
            with self.assertRaises(ValidationError):
                InputValidator.validate_s3_key(invalid)

    def test_validate_bucket_name(self):
        self.assertEqual(InputValidator.validate_bucket_name("qa-bucket"), "qa-bucket")
        for invalid in ["QA_Bucket", "ab", "-bucket", None]:
            with self.assertRaises(ValidationError):
                InputValidator.validate_bucket_name(invalid)


class TestLambdaErrorHandler(unittest.TestCase):
    """Test Lambda error handler decorator"""

    def setUp(self):
        patcher = patch('utils.error_handler.boto3.client')
        patcher.start()
        self.addCleanup(patcher.stop)
        self.context = Mock()
        self.context.aws_request_id = 'test-request-123'
        self.context.function_name = 'test-function'

    def test_lambda_error_handler_success(self):
        @lambda_error_handler()
        def test_function(event, context):
            return {'statusCode': 200, 'body': 'success'}

        result = test_function({}, self.context)
        self.assertEqual(result['statusCode'], 200)

    def test_lambda_error_handler_validation_error(self):
        """API Gateway events get a 400 for validation errors"""
        @lambda_error_handler()
        def test_function(event, context):
            raise ValidationError("Invalid input")

        result = test_function({'httpMethod': 'POST'}, self.context)
        self.assertEqual(result['statusCode'], 400)
        self.assertIn('error', json.loads(result['body']))

    def test_lambda_error_handler_business_rule_conflict(self):
        """API Gateway events get a 409 for business rule violations"""
        @lambda_error_handler()
        def test_function(event, context):
            raise BusinessLogicError("Profile must keep at least one program")

        result = test_function({'httpMethod': 'PUT'}, self.context)
        self.assertEqual(result['statusCode'], 409)

    def test_lambda_error_handler_internal_error(self):
        @lambda_error_handler()
        def test_function(event, context):
            raise Exception("Internal error")

        result = test_function({'headers': {}}, self.context)
        self.assertEqual(result['statusCode'], 500)
        self.assertEqual(result['headers']['X-Correlation-ID'], 'test-request-123')

    def test_step_functions_event_reraises(self):
        """Step Functions events re-raise so the state machine can catch them"""
        @lambda_error_handler()
        def test_function(event, context):
            raise FormattingError("no turns")

        with self.assertRaises(FormattingError):
            test_function({'bucket': 'qa-bucket'}, self.context)


class TestServiceErrorMapping(unittest.TestCase):

    def test_bedrock_throttling_maps_to_external_service(self):
        with self.assertRaises(ExternalServiceError) as ctx:
            handle_bedrock_error(client_error('ThrottlingException'), 'amazon.nova-pro-v1:0')
        self.assertEqual(ctx.exception.service, 'bedrock')

    def test_bedrock_validation_maps_to_business_logic(self):
        with self.assertRaises(BusinessLogicError):
            handle_bedrock_error(client_error('ValidationException'), 'amazon.nova-pro-v1:0')

    def test_s3_missing_key(self):
        with self.assertRaises(ExternalServiceError) as ctx:
            handle_s3_error(client_error('NoSuchKey', 404), 'qa-bucket', 'results/x.json')
        self.assertIn('results/x.json', ctx.exception.message)

    def test_s3_access_denied_is_critical(self):
        with self.assertRaises(ExternalServiceError) as ctx:
            handle_s3_error(client_error('AccessDenied', 403), 'qa-bucket')
        self.assertEqual(ctx.exception.severity, ErrorSeverity.CRITICAL)


class TestRetryHandler(unittest.TestCase):
    """Test retry mechanism"""

    def setUp(self):
        self.sleep = Mock()

    def test_retry_success_first_attempt(self):
        retry_handler = RetryHandler(sleep=self.sleep)
        mock_function = Mock(return_value="success")

        result = retry_handler.retry_call(mock_function)

        self.assertEqual(result, "success")
        mock_function.assert_called_once()
        self.sleep.assert_not_called()

    def test_retry_success_after_transient_failures(self):
        config = RetryConfig(max_attempts=3, base_delay=0.1)
        retry_handler = RetryHandler(config, sleep=self.sleep)

        mock_function = Mock(side_effect=[ConnectionError("reset"), TimeoutError("slow"), "success"])

        result = retry_handler.retry_call(mock_function)

        self.assertEqual(result, "success")
        self.assertEqual(mock_function.call_count, 3)
        self.assertEqual(self.sleep.call_count, 2)

    def test_retry_max_attempts_exceeded(self):
        config = RetryConfig(max_attempts=2, base_delay=0.1)
        retry_handler = RetryHandler(config, sleep=self.sleep)

        mock_function = Mock(side_effect=ConnectionError("persistent failure"))

        with self.assertRaises(ConnectionError):
            retry_handler.retry_call(mock_function)

        self.assertEqual(mock_function.call_count, 2)

    def test_retry_non_retryable_error(self):
        config = RetryConfig(max_attempts=3, retryable_errors=['ThrottlingException'])
        retry_handler = RetryHandler(config, sleep=self.sleep)

        mock_function = Mock(side_effect=ValueError("validation error"))

        with self.assertRaises(ValueError):
            retry_handler.retry_call(mock_function)

        mock_function.assert_called_once()

    def test_retry_with_client_error(self):
        config = RetryConfig(max_attempts=3, base_delay=0.1)
        retry_handler = RetryHandler(config, sleep=self.sleep)

        mock_function = Mock(side_effect=[client_error('ThrottlingException'), "success"])
        result = retry_handler.retry_call(mock_function)

        self.assertEqual(result, "success")
        self.assertEqual(mock_function.call_count, 2)

    def test_client_error_outside_config_is_not_retried(self):
        retry_handler = RetryHandler(RetryConfig(max_attempts=3), sleep=self.sleep)
        mock_function = Mock(side_effect=client_error('ConditionalCheckFailedException'))

        with self.assertRaises(ClientError):
            retry_handler.retry_call(mock_function)

        mock_function.assert_called_once()


class TestTransientClassification(unittest.TestCase):

    def test_throttling_code_is_transient(self):
        self.assertTrue(is_transient_error(client_error('ThrottlingException'), ['ThrottlingException']))

    def test_server_error_status_is_transient(self):
        self.assertTrue(is_transient_error(client_error('Weird', status=503)))
        self.assertTrue(is_transient_error(client_error('Weird', status=429)))

    def test_bad_request_is_not_transient(self):
        self.assertFalse(is_transient_error(client_error('BadRequestException', status=400)))

    def test_connection_errors_are_transient(self):
        self.assertTrue(is_transient_error(EndpointConnectionError(endpoint_url='https://transcribe')))
        self.assertFalse(is_transient_error(KeyError('x')))


class TestRetryConfig(unittest.TestCase):
    """Test retry configuration"""

    def test_exponential_backoff_calculation(self):
        config = RetryConfig(
            base_delay=1.0,
            exponential_base=2.0,
            strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
            jitter=False
        )
        retry_handler = RetryHandler(config)

        self.assertEqual(retry_handler._calculate_delay(0, config), 1.0)
        self.assertEqual(retry_handler._calculate_delay(1, config), 2.0)
        self.assertEqual(retry_handler._calculate_delay(2, config), 4.0)

    def test_linear_backoff_calculation(self):
        config = RetryConfig(base_delay=1.0, strategy=RetryStrategy.LINEAR_BACKOFF, jitter=False)
        retry_handler = RetryHandler(config)

        self.assertEqual(retry_handler._calculate_delay(0, config), 1.0)
        self.assertEqual(retry_handler._calculate_delay(1, config), 2.0)
        self.assertEqual(retry_handler._calculate_delay(2, config), 3.0)

    def test_max_delay_limit(self):
        config = RetryConfig(
            base_delay=1.0,
            max_delay=5.0,
            exponential_base=10.0,
            strategy=RetryStrategy.EXPONENTIAL_BACKOFF,
            jitter=False
        )
        retry_handler = RetryHandler(config)

        delay = retry_handler._calculate_delay(5, config)  # Would be 100000s without limit
        self.assertEqual(delay, 5.0)


class TestServiceWrappers(unittest.TestCase):
    """Test service-specific retry wrappers"""

    def test_s3_retry_wrapper(self):
        mock_client = Mock()
        mock_client.put_object.side_effect = [client_error('SlowDown', 503), {'ETag': 'test-etag'}]

        wrapper = S3RetryWrapper(mock_client, sleep=Mock())
        result = wrapper.put_object("test-bucket", "test-key", "test-body")

        self.assertEqual(result['ETag'], 'test-etag')
        self.assertEqual(mock_client.put_object.call_count, 2)
        mock_client.put_object.assert_called_with(Bucket="test-bucket", Key="test-key", Body="test-body")

    def test_dynamodb_retry_wrapper(self):
        mock_resource = Mock()
        mock_table = Mock()
        mock_resource.Table.return_value = mock_table
        mock_table.get_item.side_effect = [client_error('ProvisionedThroughputExceededException'), {'Item': {"jobName": "job-1"}}]

        wrapper = DynamoDBRetryWrapper("test-table", mock_resource, sleep=Mock())
        result = wrapper.get_item({"jobName": "job-1"})

        self.assertEqual(result['Item'], {"jobName": "job-1"})
        mock_resource.Table.assert_called_once_with("test-table")
        self.assertEqual(mock_table.get_item.call_count, 2)
        mock_table.get_item.assert_called_with(Key={"jobName": "job-1"})

    def test_dynamodb_wrapper_retries_transaction_conflict(self):
        mock_resource = Mock()
        mock_table = Mock()
        mock_resource.Table.return_value = mock_table
        mock_table.update_item.side_effect = [client_error('TransactionConflictException'), {}]

        wrapper = DynamoDBRetryWrapper("jobs", mock_resource, sleep=Mock())
        wrapper.update_item(Key={"jobName": "j1"}, UpdateExpression="SET a = :a")

        self.assertEqual(mock_table.update_item.call_count, 2)

    def test_dynamodb_wrapper_requires_key(self):
        wrapper = DynamoDBRetryWrapper("jobs", Mock(), sleep=Mock())
        with self.assertRaises(ValueError):
            wrapper.get_item()


if __name__ == '__main__':
    unittest.main()
