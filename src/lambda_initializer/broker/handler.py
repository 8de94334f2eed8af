"""Custom resource broker invoking initializer functions synchronously.

This module is deployed on its own as the ``on_event`` handler of the stack's
provider framework, so it imports nothing from the surrounding package.
A function error is raised here, which marks the custom resource, and with
it the deployment step, as failed.
"""

import logging

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _invoke(function_name: str, payload: str) -> str:
    import boto3  # type: ignore

    client = boto3.client("lambda")
    response = client.invoke(
        FunctionName=function_name,
        InvocationType="RequestResponse",
        Payload=payload,
    )
    body = response["Payload"].read()
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    if response.get("FunctionError"):
        raise RuntimeError(
            f"initializer {function_name} failed ({response['FunctionError']}): {body}"
        )
    return body


def on_event(event: dict, _ctx) -> dict:
    """Handle a provider framework ``onEvent`` request.

    Args:
        event: Custom resource event. ``ResourceProperties`` carries
            ``FunctionName``, ``Payload`` and ``PhysicalResourceId``.
        _ctx: Lambda context object (unused).

    Returns:
        dict: Physical resource id and, for create and update, the
        initializer response under ``Data.Payload``.

    Raises:
        RuntimeError: If the initializer reports a function error.
        KeyError: If a required resource property is missing.
    """
    request_type = event["RequestType"]
    if request_type == "Delete":
        return {"PhysicalResourceId": event["PhysicalResourceId"]}

    props = event["ResourceProperties"]
    function_name = props["FunctionName"]
    logger.info("%s: invoking %s", request_type, function_name)
    body = _invoke(function_name, props["Payload"])
    logger.info("Initializer %s returned %d bytes", function_name, len(body))
    return {
        "PhysicalResourceId": props["PhysicalResourceId"],
        "Data": {"Payload": body},
    }


__all__ = ["on_event"]
