import json
import boto3
import os
import logging

logger = logging.getLogger()
logger.setLevel(logging.INFO)

codedeploy = boto3.client('codedeploy')
lambda_client = boto3.client('lambda')

# Smoke tests that never write to the subscriber table:
# a CORS preflight and a subscribe request rejected by validation.
SMOKE_TESTS = [
    (
        {
            'requestContext': {'http': {'method': 'OPTIONS', 'path': '/subscribe'}},
        },
        204
    ),
    (
        {
            'requestContext': {'http': {'method': 'PUT', 'path': '/subscribe'}},
            'body': json.dumps({'email': 'not-an-email', 'siteId': 'pre-deployment.test'}),
        },
        400
    ),
]


def _invoke(target_function, test_event):
    response = lambda_client.invoke(
        FunctionName=target_function,
        InvocationType='RequestResponse',
        Payload=json.dumps(test_event)
    )

    response_payload = json.loads(response['Payload'].read())
    logger.info(f"Test response: {json.dumps(response_payload)}")

    if response.get('FunctionError'):
        raise Exception(f"Function returned error: {response_payload}")

    if response.get('StatusCode') != 200:
        raise Exception(f"Unexpected status code: {response.get('StatusCode')}")

    return response_payload


def lambda_handler(event, context):
    """
    Pre-traffic hook for CodeDeploy.
    Runs smoke tests against the new AddSubscriber version before shifting traffic.
    """
    logger.info(f"Pre-traffic hook triggered: {json.dumps(event)}")

    deployment_id = event['DeploymentId']
    lifecycle_event_hook_execution_id = event['LifecycleEventHookExecutionId']

    try:
        target_function = os.environ.get('TARGET_FUNCTION')
        logger.info(f"Running smoke tests on {target_function}")

        for test_event, expected_status in SMOKE_TESTS:
            response_payload = _invoke(target_function, test_event)
            if response_payload.get('statusCode') != expected_status:
                raise Exception(
                    f"Invalid response status: {response_payload.get('statusCode')} "
                    f"(expected {expected_status})"
                )

        logger.info("Pre-traffic validation passed")

        # Report success
        codedeploy.put_lifecycle_event_hook_execution_status(
            deploymentId=deployment_id,
            lifecycleEventHookExecutionId=lifecycle_event_hook_execution_id,
            status='Succeeded'
        )

        return {
            'statusCode': 200,
            'body': json.dumps('Pre-traffic validation succeeded')
        }

    except Exception as e:
        logger.error(f"Pre-traffic validation failed: {str(e)}", exc_info=True)

        # Report failure - this will prevent deployment
        codedeploy.put_lifecycle_event_hook_execution_status(
            deploymentId=deployment_id,
            lifecycleEventHookExecutionId=lifecycle_event_hook_execution_id,
            status='Failed'
        )

        return {
            'statusCode': 500,
            'body': json.dumps(f'Pre-traffic validation failed: {str(e)}')
        }
