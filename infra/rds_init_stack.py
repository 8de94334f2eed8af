"""Define the CDK stack for the RDS initializer workflow.

The stack places a MySQL instance in isolated subnets and runs a
containerised initializer function against it once the instance is ready.
The initializer's response is published as a stack output.
"""

from pathlib import Path

from aws_cdk import CfnOutput, Duration, Stack, Token
from aws_cdk import aws_ec2 as ec2
from aws_cdk import aws_lambda as lambda_
from aws_cdk import aws_logs as logs
from aws_cdk import aws_rds as rds
from constructs import Construct

from lambda_initializer.constants import DB_NAME, DB_USERNAME, INSTANCE_IDENTIFIER, MYSQL_PORT
from lambda_initializer.construct import LambdaInitializer
from lambda_initializer.core import creds_secret_name

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def initializer_image_code() -> lambda_.DockerImageCode:
    """Return the image built from the project's Dockerfile.

    Only the package sources are staged as build context.
    """

    return lambda_.DockerImageCode.from_image_asset(
        str(PROJECT_ROOT),
        exclude=["*", "!Dockerfile", "!pyproject.toml", "!src", "**/__pycache__"],
    )


class RdsInitStack(Stack):
    """Provision a MySQL instance and the function that initializes it."""

    def __init__(
        self,
        scope: Construct,
        id: str,
        *,
        instance_identifier: str = INSTANCE_IDENTIFIER,
        fn_code: lambda_.DockerImageCode | None = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, id, **kwargs)

        secret_name = creds_secret_name(id, instance_identifier)
        self.creds = rds.DatabaseSecret(
            self,
            "MysqlRdsCredentials",
            secret_name=secret_name,
            username=DB_USERNAME,
        )

        self.vpc = self.declare_network()
        self.db = self.declare_database(self.vpc, self.creds, instance_identifier)

        self.initializer = LambdaInitializer(
            self,
            "MyRdsInitLambda",
            config={"credsSecretName": secret_name},
            fn_memory_size=256,
            fn_log_retention=logs.RetentionDays.FIVE_MONTHS,
            fn_code=fn_code or initializer_image_code(),
            fn_timeout=Duration.minutes(2),
            fn_security_groups=[],
            vpc=self.vpc,
            subnets_selection=ec2.SubnetSelection(
                subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS
            ),
        )

        self.wire(self.db, self.creds, self.initializer)

        CfnOutput(
            self,
            "RdsInitLambdaFnResponse",
            value=Token.as_string(self.initializer.response),
        )

    def declare_network(self) -> ec2.Vpc:
        """Return a VPC with public, compute and isolated data subnets."""

        return ec2.Vpc(
            self,
            "MyVPC",
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    cidr_mask=24,
                    name="ingress",
                    subnet_type=ec2.SubnetType.PUBLIC,
                ),
                ec2.SubnetConfiguration(
                    cidr_mask=24,
                    name="compute",
                    subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS,
                ),
                ec2.SubnetConfiguration(
                    cidr_mask=28,
                    name="rds",
                    subnet_type=ec2.SubnetType.PRIVATE_ISOLATED,
                ),
            ],
        )

    def declare_database(
        self, vpc: ec2.IVpc, creds: rds.DatabaseSecret, instance_identifier: str
    ) -> rds.DatabaseInstance:
        """Return a MySQL 8.0 instance restricted to the isolated subnets."""

        return rds.DatabaseInstance(
            self,
            "MysqlRdsInstance",
            vpc_subnets=ec2.SubnetSelection(
                one_per_az=True,
                subnet_type=ec2.SubnetType.PRIVATE_ISOLATED,
            ),
            credentials=rds.Credentials.from_secret(creds),
            vpc=vpc,
            port=MYSQL_PORT,
            database_name=DB_NAME,
            allocated_storage=20,
            instance_identifier=instance_identifier,
            engine=rds.DatabaseInstanceEngine.mysql(
                version=rds.MysqlEngineVersion.VER_8_0
            ),
            instance_type=ec2.InstanceType.of(
                ec2.InstanceClass.T2, ec2.InstanceSize.LARGE
            ),
        )

    def wire(
        self,
        db: rds.DatabaseInstance,
        creds: rds.DatabaseSecret,
        initializer: LambdaInitializer,
    ) -> None:
        """Order, connect and authorize ``initializer`` against ``db``."""

        # the invoke must not race the instance becoming available
        initializer.custom_resource.node.add_dependency(db)

        db.connections.allow_from(initializer.function, ec2.Port.tcp(MYSQL_PORT))

        creds.grant_read(initializer.function)
