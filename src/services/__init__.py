"""
Service modules for Lambda handler operations.

This package contains the AWS-facing building blocks of the subscriber
service: the DynamoDB subscriber store, the confirmation token codec, email
address handling and the SQS confirmation notifier.
"""

__all__ = ['dynamodb', 'email', 'notifier', 'tokens']
