"""Command-line interface for inspecting and re-running initializer requests."""

import argparse
import json
import sys

import lambda_initializer

from .core import InitializerRequest, physical_resource_id


def _load_config(parser: argparse.ArgumentParser, raw: str):
    try:
        return json.loads(raw)
    except ValueError as exc:
        parser.error(f"invalid JSON config: {exc}")


def _invoke(function: str, payload: str, region: str | None) -> int:
    """Invoke ``function`` synchronously with ``payload``.

    Args:
        function: Name or ARN of the initializer function.
        payload: Canonical invocation envelope.
        region: Optional AWS region override.

    Returns:
        int: ``0`` on success, ``1`` when the call or the function fails.
    """
    import boto3  # type: ignore
    from botocore.exceptions import ClientError  # type: ignore

    client = boto3.client("lambda", region_name=region) if region else boto3.client("lambda")
    try:
        response = client.invoke(
            FunctionName=function,
            InvocationType="RequestResponse",
            Payload=payload,
        )
    except ClientError as exc:
        print(f"invoke failed: {exc}", file=sys.stderr)
        return 1

    body = response["Payload"].read()
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    try:
        print(json.dumps(json.loads(body), indent=2, sort_keys=True))
    except ValueError:
        print(body)
    if response.get("FunctionError"):
        print(f"function error: {response['FunctionError']}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Print an initializer payload or invoke a deployed initializer.

    Args:
        argv: Optional list of command-line arguments.

    Returns:
        int: ``0`` on success, ``1`` when the invocation fails.
    """

    parser = argparse.ArgumentParser(prog="lambda-initializer")
    parser.add_argument(
        "--version", action="version", version=lambda_initializer.__version__
    )
    sub = parser.add_subparsers(dest="cmd", required=True)
    p = sub.add_parser("payload")
    p.add_argument("config", help="JSON configuration object")
    p.add_argument("--id", default="Initializer", help="construct id")
    p.add_argument("--fn-version", help="function version to derive the resource id")

    i = sub.add_parser("invoke")
    i.add_argument("function")
    i.add_argument("config", help="JSON configuration object")
    i.add_argument("--region")

    args = parser.parse_args(argv)
    request = InitializerRequest(_load_config(parser, args.config))
    payload = request.payload()

    if args.cmd == "payload":
        print(payload)
        if args.fn_version is not None:
            print(physical_resource_id(args.id, args.fn_version, request.hash_prefix()))
        return 0
    return _invoke(args.function, payload, args.region)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
