import json
import re

import aws_cdk as cdk
import pytest
from aws_cdk import aws_ec2 as ec2
from aws_cdk import aws_ecr as ecr
from aws_cdk import aws_lambda as lambda_
from aws_cdk import aws_logs as logs
from aws_cdk.assertions import Match, Template

from lambda_initializer.construct import LambdaInitializer, broker_role
from lambda_initializer.core import InitializerRequest

ENV = cdk.Environment(account="123456789012", region="us-east-1")


def _flatten(value) -> str:
    """Render an ``Fn::Join`` of literals and refs as a single string."""
    if isinstance(value, str):
        return value
    if "Fn::Join" in value:
        sep, parts = value["Fn::Join"]
        return sep.join(_flatten(part) for part in parts)
    if "Ref" in value:
        return "${" + value["Ref"] + "}"
    return json.dumps(value, sort_keys=True)


def _stack(name: str = "TestStack") -> tuple[cdk.Stack, ec2.Vpc, lambda_.DockerImageCode]:
    app = cdk.App()
    stack = cdk.Stack(app, name, env=ENV)
    vpc = ec2.Vpc(stack, "Vpc")
    repo = ecr.Repository.from_repository_name(stack, "Repo", "initializer")
    return stack, vpc, lambda_.DockerImageCode.from_ecr(repo)


def _initializer(stack, vpc, code, id="Init", config=None, **overrides) -> LambdaInitializer:
    props = dict(
        vpc=vpc,
        subnets_selection=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS),
        fn_security_groups=[],
        fn_timeout=cdk.Duration.minutes(2),
        fn_code=code,
        fn_log_retention=logs.RetentionDays.FIVE_MONTHS,
        fn_memory_size=256,
        config={"credsSecretName": "/teststack/rds/creds/db"} if config is None else config,
    )
    props.update(overrides)
    return LambdaInitializer(stack, id, **props)


def _custom_resource(template: Template) -> dict:
    resources = template.find_resources("Custom::LambdaInitializer")
    assert len(resources) == 1
    return next(iter(resources.values()))


def _broker_functions(template: Template) -> dict:
    return template.find_resources(
        "AWS::Lambda::Function", {"Properties": {"Handler": "handler.on_event"}}
    )


def _actions(statement: dict) -> list[str]:
    actions = statement["Action"]
    return [actions] if isinstance(actions, str) else list(actions)


def _resources(statement: dict) -> list:
    resources = statement["Resource"]
    return resources if isinstance(resources, list) else [resources]


def _role_statements(stack: cdk.Stack, template: Template) -> list[dict]:
    """Return every inline statement attached to the broker role."""
    role_ref = {"Ref": stack.get_logical_id(broker_role(stack).node.default_child)}
    statements = []
    for policy in template.find_resources("AWS::IAM::Policy").values():
        if role_ref in policy["Properties"].get("Roles", []):
            statements.extend(policy["Properties"]["PolicyDocument"]["Statement"])
    return statements


def test_function_properties():
    stack, vpc, code = _stack()
    _initializer(stack, vpc, code)
    template = Template.from_stack(stack)

    template.has_resource_properties(
        "AWS::Lambda::Function",
        {
            "FunctionName": "Init-LambdaInitTestStack",
            "MemorySize": 256,
            "Timeout": 120,
            "PackageType": "Image",
        },
    )
    template.has_resource_properties(
        "AWS::EC2::SecurityGroup",
        {
            "GroupName": "InitLambdaInitializerFnSg",
            "SecurityGroupEgress": Match.array_with(
                [Match.object_like({"CidrIp": "0.0.0.0/0"})]
            ),
        },
    )
    template.has_resource_properties("AWS::Logs::LogGroup", {"RetentionInDays": 150})


def test_caller_security_groups_attached():
    stack, vpc, code = _stack()
    extra = ec2.SecurityGroup(stack, "Extra", vpc=vpc)
    _initializer(stack, vpc, code, fn_security_groups=[extra])
    template = Template.from_stack(stack)

    fn = next(
        r
        for r in template.find_resources("AWS::Lambda::Function").values()
        if r["Properties"].get("FunctionName") == "Init-LambdaInitTestStack"
    )
    groups = fn["Properties"]["VpcConfig"]["SecurityGroupIds"]
    assert len(groups) == 2
    assert {"Fn::GetAtt": [stack.get_logical_id(extra.node.default_child), "GroupId"]} in groups


def test_invocation_payload_and_resource_id():
    stack, vpc, code = _stack()
    initializer = _initializer(stack, vpc, code)
    template = Template.from_stack(stack)

    assert initializer.payload == (
        '{"params":{"config":{"credsSecretName":"/teststack/rds/creds/db"}}}'
    )
    hash_prefix = InitializerRequest(
        {"credsSecretName": "/teststack/rds/creds/db"}
    ).hash_prefix()
    props = _custom_resource(template)["Properties"]
    assert props["Payload"] == initializer.payload
    assert props["FunctionName"] == {
        "Ref": stack.get_logical_id(initializer.function.node.default_child)
    }
    resource_id = _flatten(props["PhysicalResourceId"])
    assert resource_id.startswith("Init-AwsSdkCall-")
    assert resource_id.endswith(hash_prefix)
    assert "Version" in resource_id
    assert initializer.physical_resource_id.startswith("Init-AwsSdkCall-")
    assert initializer.physical_resource_id.endswith(hash_prefix)


def test_invocation_goes_through_broker_provider():
    stack, vpc, code = _stack()
    _initializer(stack, vpc, code)
    template = Template.from_stack(stack)

    framework = template.find_resources(
        "AWS::Lambda::Function", {"Properties": {"Handler": "framework.onEvent"}}
    )
    assert len(framework) == 1
    framework_id = next(iter(framework))
    service_token = _custom_resource(template)["Properties"]["ServiceToken"]
    assert service_token == {"Fn::GetAtt": [framework_id, "Arn"]}


def test_broker_timeout_is_ten_minutes():
    stack, vpc, code = _stack()
    _initializer(stack, vpc, code)
    template = Template.from_stack(stack)

    brokers = _broker_functions(template)
    assert len(brokers) == 1
    props = next(iter(brokers.values()))["Properties"]
    assert props["Timeout"] == 600
    assert props["Runtime"] == "python3.12"
    assert props["Role"] == {
        "Fn::GetAtt": [stack.get_logical_id(broker_role(stack).node.default_child), "Arn"]
    }


def test_broker_policy_is_scoped_to_initializers():
    stack, vpc, code = _stack()
    _initializer(stack, vpc, code)
    template = Template.from_stack(stack)

    statements = _role_statements(stack, template)
    assert statements
    for statement in statements:
        assert statement["Effect"] == "Allow"
        assert _actions(statement) == ["lambda:InvokeFunction"]
        for resource in _resources(statement):
            assert resource != "*"
            assert re.fullmatch(
                r"arn:(aws|\$\{AWS::Partition\}):lambda:us-east-1:123456789012"
                r":function:\*-LambdaInitTestStack",
                _flatten(resource),
            )


def test_no_lambda_permission_on_every_resource():
    stack, vpc, code = _stack()
    _initializer(stack, vpc, code)
    template = Template.from_stack(stack)

    for policy in template.find_resources("AWS::IAM::Policy").values():
        for statement in policy["Properties"]["PolicyDocument"]["Statement"]:
            if any(action.startswith("lambda:") for action in _actions(statement)):
                assert "*" not in _resources(statement)


def test_broker_role_shared_between_initializers():
    stack, vpc, code = _stack()
    first = _initializer(stack, vpc, code, id="First")
    second = _initializer(stack, vpc, code, id="Second", config={"other": True})
    template = Template.from_stack(stack)

    assert broker_role(first) is broker_role(second)
    assert len(_role_statements(stack, template)) == 1
    assert len(template.find_resources("Custom::LambdaInitializer")) == 2
    assert len(_broker_functions(template)) == 1
    framework = template.find_resources(
        "AWS::Lambda::Function", {"Properties": {"Handler": "framework.onEvent"}}
    )
    assert len(framework) == 1


def test_response_is_lazy_token():
    stack, vpc, code = _stack()
    initializer = _initializer(stack, vpc, code)
    assert cdk.Token.is_unresolved(initializer.response)
    resolved = stack.resolve(initializer.response)
    assert resolved["Fn::GetAtt"][1] == "Payload"


@pytest.mark.parametrize("size", [64, 1024, 300])
def test_invalid_memory_size_rejected_at_declaration(size):
    stack, vpc, code = _stack()
    with pytest.raises(ValueError):
        _initializer(stack, vpc, code, fn_memory_size=size)
    assert stack.node.try_find_child("Init") is None


def test_timeout_must_leave_room_for_broker():
    stack, vpc, code = _stack()
    with pytest.raises(ValueError):
        _initializer(stack, vpc, code, fn_timeout=cdk.Duration.minutes(10))


def test_function_name_length_rejected():
    stack, vpc, code = _stack("S" * 30)
    with pytest.raises(ValueError, match="exceeds 64 characters"):
        _initializer(stack, vpc, code, id="I" * 30)
    assert stack.node.try_find_child("I" * 30) is None


def test_function_name_at_limit_accepted():
    stack, vpc, code = _stack("S" * 23)
    _initializer(stack, vpc, code, id="I" * 30)
    Template.from_stack(stack).has_resource_properties(
        "AWS::Lambda::Function", {"FunctionName": "I" * 30 + "-LambdaInit" + "S" * 23}
    )


def _identity(config: dict) -> str:
    stack, vpc, code = _stack()
    _initializer(stack, vpc, code, config=config)
    props = _custom_resource(Template.from_stack(stack))["Properties"]
    return _flatten(props["PhysicalResourceId"]) + props["Payload"]


def test_identity_stable_across_synths():
    assert _identity({"a": 1, "b": 2}) == _identity({"b": 2, "a": 1})


def test_identity_changes_with_config():
    assert _identity({"a": 1}) != _identity({"a": 2})
