import os

import aws_cdk as cdk
from rds_init_stack import RdsInitStack

app = cdk.App()
RdsInitStack(
    app,
    "RdsInitStack",
    env=cdk.Environment(
        account=app.node.try_get_context("account") or os.getenv("CDK_DEFAULT_ACCOUNT"),
        region=app.node.try_get_context("region") or os.getenv("CDK_DEFAULT_REGION"),
    ),
)
app.synth()
