"""CDK construct invoking a containerised Lambda once per meaningful change.

Every initializer of a stack is driven by one broker function behind one
provider framework. Its role is shared as well, and its invoke permission
must cover every initializer function of the stack rather than a single ARN.
The broker raises when an initializer reports a function error, so a failing
initializer fails the deployment.
"""

from pathlib import Path
from typing import Any, Sequence

from aws_cdk import CustomResource, Duration, Stack, Token
from aws_cdk import aws_ec2 as ec2
from aws_cdk import aws_iam as iam
from aws_cdk import aws_lambda as lambda_
from aws_cdk import aws_logs as logs
from aws_cdk import custom_resources as cr
from constructs import Construct

from .constants import (
    BROKER_FUNCTION_ID,
    BROKER_PROVIDER_ID,
    BROKER_ROLE_ID,
    BROKER_TIMEOUT_MINUTES,
    DEFAULT_MEMORY_SIZE,
    MAX_FUNCTION_NAME_LENGTH,
)
from .core import (
    InitializerRequest,
    broker_resource_pattern,
    function_name,
    physical_resource_id,
    validate_memory_size,
)

BROKER_CODE_DIR = Path(__file__).resolve().parent / "broker"


def broker_role(scope: Construct) -> iam.Role:
    """Return the stack-wide role of the broker function.

    The role is created on first use and looked up afterwards.

    Args:
        scope: Any construct inside the target stack.

    Returns:
        iam.Role: Role allowed to invoke the stack's initializer functions.
    """

    stack = Stack.of(scope)
    existing = stack.node.try_find_child(BROKER_ROLE_ID)
    if existing is not None:
        return existing

    role = iam.Role(
        stack,
        BROKER_ROLE_ID,
        assumed_by=iam.ServicePrincipal("lambda.amazonaws.com"),
    )
    role.add_managed_policy(
        iam.ManagedPolicy.from_aws_managed_policy_name(
            "service-role/AWSLambdaBasicExecutionRole"
        )
    )
    role.add_to_policy(
        iam.PolicyStatement(
            actions=["lambda:InvokeFunction"],
            resources=[
                broker_resource_pattern(
                    stack.partition, stack.region, stack.account, stack.stack_name
                )
            ],
        )
    )
    return role


def broker_provider(scope: Construct) -> cr.Provider:
    """Return the stack-wide provider backing every initializer invocation."""

    stack = Stack.of(scope)
    existing = stack.node.try_find_child(BROKER_PROVIDER_ID)
    if existing is not None:
        return existing

    on_event = lambda_.Function(
        stack,
        BROKER_FUNCTION_ID,
        runtime=lambda_.Runtime.PYTHON_3_12,
        code=lambda_.Code.from_asset(str(BROKER_CODE_DIR), exclude=["__pycache__"]),
        handler="handler.on_event",
        role=broker_role(stack),
        timeout=Duration.minutes(BROKER_TIMEOUT_MINUTES),
    )
    return cr.Provider(stack, BROKER_PROVIDER_ID, on_event_handler=on_event)


class LambdaInitializer(Construct):
    """Deploy an initializer function and invoke it through a custom resource.

    The invocation re-runs whenever the function version or the canonical
    payload changes; no-op deployments keep the same physical resource id.
    """

    def __init__(
        self,
        scope: Construct,
        id: str,
        *,
        vpc: ec2.IVpc,
        subnets_selection: ec2.SubnetSelection,
        fn_security_groups: Sequence[ec2.ISecurityGroup],
        fn_timeout: Duration,
        fn_code: lambda_.DockerImageCode,
        fn_log_retention: logs.RetentionDays,
        config: Any,
        fn_memory_size: int = DEFAULT_MEMORY_SIZE,
    ) -> None:
        validate_memory_size(fn_memory_size)
        broker_timeout = Duration.minutes(BROKER_TIMEOUT_MINUTES)
        if fn_timeout.to_seconds() >= broker_timeout.to_seconds():
            raise ValueError(
                f"fn_timeout must be shorter than {BROKER_TIMEOUT_MINUTES} minutes"
            )
        request = InitializerRequest(config)
        payload = request.payload()
        name = function_name(id, Stack.of(scope).stack_name)
        if not Token.is_unresolved(name) and len(name) > MAX_FUNCTION_NAME_LENGTH:
            raise ValueError(
                f"function name {name!r} exceeds {MAX_FUNCTION_NAME_LENGTH} characters"
            )

        super().__init__(scope, id)

        fn_sg = ec2.SecurityGroup(
            self,
            "LambdaInitializerFnSg",
            security_group_name=f"{id}LambdaInitializerFnSg",
            vpc=vpc,
            allow_all_outbound=True,
        )

        log_group = logs.LogGroup(
            self,
            "LambdaInitializerFnLogs",
            retention=fn_log_retention,
        )

        fn = lambda_.DockerImageFunction(
            self,
            "LambdaInitializerFn",
            memory_size=fn_memory_size,
            function_name=name,
            code=fn_code,
            vpc=vpc,
            vpc_subnets=subnets_selection,
            security_groups=[fn_sg, *fn_security_groups],
            timeout=fn_timeout,
            log_group=log_group,
        )

        self.physical_resource_id = physical_resource_id(
            id, fn.current_version.version, request.hash_prefix()
        )
        self.custom_resource = CustomResource(
            self,
            "LambdaInitializerCustomResource",
            service_token=broker_provider(self).service_token,
            resource_type="Custom::LambdaInitializer",
            properties={
                "FunctionName": fn.function_name,
                "Payload": payload,
                "PhysicalResourceId": self.physical_resource_id,
            },
        )

        self.response = self.custom_resource.get_att_string("Payload")
        self.payload = payload
        self.function = fn
