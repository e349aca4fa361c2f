"""
AWS Client Management - Centralized boto3 client creation

This module provides singleton boto3 clients to avoid duplicate initialization
across Lambda functions. Clients are created once per Lambda container lifecycle.
"""
import boto3
from typing import Optional
from constants import AWS_REGION


class AWSClients:
    """Singleton manager for AWS service clients"""

    _s3: Optional[object] = None
    _transcribe: Optional[object] = None
    _stepfunctions: Optional[object] = None
    _dynamodb: Optional[object] = None
    _dynamodb_resource: Optional[object] = None

    @classmethod
    def s3(cls):
        """Get S3 client for object storage operations"""
        if cls._s3 is None:
            cls._s3 = boto3.client("s3", region_name=AWS_REGION)
        return cls._s3

    @classmethod
    def transcribe(cls):
        """Get Transcribe client for Call Analytics jobs"""
        if cls._transcribe is None:
            cls._transcribe = boto3.client("transcribe", region_name=AWS_REGION)
        return cls._transcribe

    @classmethod
    def stepfunctions(cls):
        """Get Step Functions client for workflow orchestration"""
        if cls._stepfunctions is None:
            cls._stepfunctions = boto3.client("stepfunctions", region_name=AWS_REGION)
        return cls._stepfunctions

    @classmethod
    def dynamodb(cls):
        """Get DynamoDB client for transactional writes"""
        if cls._dynamodb is None:
            cls._dynamodb = boto3.client("dynamodb", region_name=AWS_REGION)
        return cls._dynamodb

    @classmethod
    def dynamodb_resource(cls):
        """Get DynamoDB resource for table-level reads and updates"""
        if cls._dynamodb_resource is None:
            cls._dynamodb_resource = boto3.resource("dynamodb", region_name=AWS_REGION)
        return cls._dynamodb_resource


def get_s3_client():
    """Get S3 client"""
    return AWSClients.s3()


def get_transcribe_client():
    """Get Transcribe client"""
    return AWSClients.transcribe()
