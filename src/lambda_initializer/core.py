"""Deterministic initialization requests and the initializer Lambda handler.

The CDK construct in :mod:`lambda_initializer.construct` never sends the
configuration object as-is. It wraps it in the ``{"params": {"config": ...}}``
envelope, serialises it canonically and derives a short digest from the
result. The digest, together with the function version, forms the physical
resource id CloudFormation uses to decide whether the initializer has to run
again. Everything here is plain Python so it can be exercised without
synthesizing a stack.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .constants import (
    ALLOWED_MEMORY_SIZES,
    FUNCTION_NAME_INFIX,
    HASH_PREFIX_LENGTH,
    LOG_LEVEL,
    SDK_CALL_INFIX,
)

logger = logging.getLogger(__name__)
logger.setLevel(LOG_LEVEL)


@dataclass(frozen=True)
class InitializerRequest:
    """Configuration sent to an initializer function."""

    config: Any

    def payload(self) -> str:
        """Return the canonical JSON envelope for :attr:`config`.

        Keys are sorted at every level and separators are compact, so two
        configs that only differ in key order serialise to the same bytes.

        Returns:
            str: Serialised ``{"params": {"config": ...}}`` document.

        Raises:
            TypeError: If ``config`` is not JSON serialisable.
        """

        try:
            return json.dumps(
                {"params": {"config": self.config}},
                sort_keys=True,
                separators=(",", ":"),
                ensure_ascii=False,
            )
        except (TypeError, ValueError) as exc:
            raise TypeError(f"config is not JSON serialisable: {exc}") from exc

    def hash_prefix(self) -> str:
        """Return the first six hex characters of the payload MD5 digest."""

        digest = hashlib.md5(self.payload().encode("utf-8"), usedforsecurity=False)
        return digest.hexdigest()[:HASH_PREFIX_LENGTH]


def physical_resource_id(construct_id: str, function_version: str, hash_prefix: str) -> str:
    """Return the identity token of one initializer invocation.

    Version and digest are concatenated without a separator to stay
    byte-compatible with ids recorded by earlier deployments.

    Args:
        construct_id: Logical id of the initializer construct.
        function_version: Version of the initializer function.
        hash_prefix: Digest fragment from :meth:`InitializerRequest.hash_prefix`.

    Returns:
        str: ``<construct_id>-AwsSdkCall-<version><hash_prefix>``.
    """

    return f"{construct_id}{SDK_CALL_INFIX}{function_version}{hash_prefix}"


def build_request(construct_id: str, function_version: str, config: Any) -> tuple[str, str]:
    """Return ``(payload, physical_resource_id)`` for ``config``."""

    request = InitializerRequest(config)
    token = physical_resource_id(construct_id, function_version, request.hash_prefix())
    return request.payload(), token


def function_name(construct_id: str, stack_name: str) -> str:
    """Return ``<construct_id>-LambdaInit<stack_name>``."""

    return f"{construct_id}{FUNCTION_NAME_INFIX}{stack_name}"


def broker_resource_pattern(partition: str, region: str, account: str, stack_name: str) -> str:
    """Return the ARN pattern the broker may invoke.

    The pattern covers every initializer function of one stack and nothing
    else, because the broker function is shared by all initializers.
    """

    return (
        f"arn:{partition}:lambda:{region}:{account}:function:"
        f"*{FUNCTION_NAME_INFIX}{stack_name}"
    )


def validate_memory_size(value: int) -> int:
    """Return ``value`` when it is an allowed memory size.

    Raises:
        ValueError: If ``value`` is not one of 128, 256 or 512.
    """

    if isinstance(value, bool) or value not in ALLOWED_MEMORY_SIZES:
        allowed = ", ".join(str(size) for size in ALLOWED_MEMORY_SIZES)
        raise ValueError(f"fn_memory_size must be one of {allowed}, got {value!r}")
    return value


def creds_secret_name(stack_id: str, instance_identifier: str) -> str:
    """Return the Secrets Manager name holding the instance credentials."""

    return f"/{stack_id}/rds/creds/{instance_identifier}".lower()


@dataclass
class InitEvent:
    """Invocation payload for :func:`lambda_handler`."""

    config: Mapping[str, Any]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InitEvent":
        """Return ``InitEvent`` built from the invocation envelope.

        Args:
            data: Mapping shaped as ``{"params": {"config": {...}}}``.

        Returns:
            InitEvent: Parsed event object.

        Raises:
            KeyError: If ``params`` or ``config`` is missing.
            TypeError: If the envelope or the config is not a mapping.
        """
        if not isinstance(data, Mapping):
            raise TypeError("event must be a mapping")
        try:
            params = data["params"]
            if not isinstance(params, Mapping):
                raise TypeError("params must be a mapping")
            config = params["config"]
        except KeyError as exc:
            raise KeyError(f"missing field: {exc.args[0]}") from exc
        if not isinstance(config, Mapping):
            raise TypeError("config must be a mapping")
        return cls(config=config)


def lambda_handler(event: Mapping[str, Any] | InitEvent, _ctx) -> dict:
    """Resolve the database credentials named in the invocation config.

    Args:
        event: Invocation envelope, see :meth:`InitEvent.from_dict`.
        _ctx: Lambda context object (unused).

    Returns:
        dict: ``{"status": "OK", "database": {...}}`` describing the
        instance the credentials point at. The password is never returned.

    Raises:
        KeyError: If ``credsSecretName`` is missing from the config.
        RuntimeError: If the secret is not a JSON document with a username.
    """
    import boto3  # type: ignore

    evt = event if isinstance(event, InitEvent) else InitEvent.from_dict(event)
    try:
        secret_name = evt.config["credsSecretName"]
    except KeyError as exc:
        raise KeyError("missing field: credsSecretName") from exc
    if not isinstance(secret_name, str) or not secret_name:
        raise TypeError("credsSecretName must be a non-empty string")

    logger.info("Reading credentials from secret %s", secret_name)
    client = boto3.client("secretsmanager")
    secret = client.get_secret_value(SecretId=secret_name)
    try:
        creds = json.loads(secret["SecretString"])
    except (KeyError, ValueError) as exc:
        raise RuntimeError(f"secret {secret_name} is not a JSON document") from exc
    if not isinstance(creds, Mapping) or not creds.get("username"):
        raise RuntimeError(f"secret {secret_name} has no username")

    database = {
        "host": creds.get("host"),
        "port": creds.get("port"),
        "dbname": creds.get("dbname"),
        "username": creds["username"],
    }
    logger.info("Resolved credentials for %s@%s", database["username"], database["host"])
    return {"status": "OK", "database": database}
