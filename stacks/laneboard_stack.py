import os

from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_apigateway as apigw,
    aws_cognito as cognito,
    aws_dynamodb as ddb,
    aws_lambda as _lambda,
    aws_logs as logs,
)
from constructs import Construct

SCHEMA_VERSION = "2026-10-01"


class LaneboardStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        # Used for API stage name and to help avoid naming collisions within an account+region.
        stage_name = os.getenv("STAGE", "prod")
        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "destroy").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        # Dev-first default; set DATA_RETENTION_MODE=retain for production.
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        name_prefix = f"{construct_id}-{stage_name}"

        cards_table = ddb.Table(
            self,
            "BoardCards",
            partition_key=ddb.Attribute(name="cardId", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )
        cards_table.add_global_secondary_index(
            index_name="LaneIndex",
            partition_key=ddb.Attribute(name="laneId", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="position", type=ddb.AttributeType.NUMBER),
            projection_type=ddb.ProjectionType.ALL,
        )
        cards_table.add_global_secondary_index(
            index_name="ParentIndex",
            partition_key=ddb.Attribute(name="parentId", type=ddb.AttributeType.STRING),
            projection_type=ddb.ProjectionType.ALL,
        )

        lanes_table = ddb.Table(
            self,
            "BoardLanes",
            partition_key=ddb.Attribute(name="laneId", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )
        lanes_table.add_global_secondary_index(
            index_name="BoardIndex",
            partition_key=ddb.Attribute(name="boardId", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="sortOrder", type=ddb.AttributeType.NUMBER),
            projection_type=ddb.ProjectionType.ALL,
        )

        audit_table = ddb.Table(
            self,
            "BoardAudit",
            partition_key=ddb.Attribute(name="cardId", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="tsAuditId", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )
        audit_table.add_global_secondary_index(
            index_name="ActorTimeIndex",
            partition_key=ddb.Attribute(name="actorId", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="tsAuditId", type=ddb.AttributeType.STRING),
            projection_type=ddb.ProjectionType.ALL,
        )

        user_pool = cognito.UserPool(
            self,
            "BoardUserPool",
            user_pool_name=f"{name_prefix}-users",
            self_sign_up_enabled=False,
            sign_in_aliases=cognito.SignInAliases(username=True, email=True),
            password_policy=cognito.PasswordPolicy(
                min_length=12,
                require_digits=True,
                require_lowercase=True,
                require_uppercase=True,
                require_symbols=True,
            ),
            removal_policy=stateful_removal_policy,
        )
        user_pool_client = user_pool.add_client(
            "BoardUserPoolClient",
            auth_flows=cognito.AuthFlow(user_password=True, user_srp=True),
            generate_secret=False,
            refresh_token_validity=Duration.days(1),
        )

        board_fn = _lambda.Function(
            self,
            "BoardHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="board_handler.handler",
            code=_lambda.Code.from_asset("lambda"),
            timeout=Duration.seconds(20),
            environment={
                "BOARD_CARDS_TABLE": cards_table.table_name,
                "BOARD_LANES_TABLE": lanes_table.table_name,
                "BOARD_AUDIT_TABLE": audit_table.table_name,
                "BOARD_SCHEMA_VERSION": SCHEMA_VERSION,
            },
        )
        cards_table.grant_read_write_data(board_fn)
        lanes_table.grant_read_write_data(board_fn)
        audit_table.grant_read_write_data(board_fn)

        logs.LogGroup(
            self,
            "BoardHandlerLogGroup",
            log_group_name=f"/aws/lambda/{board_fn.function_name}",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=stateful_removal_policy,
        )
        access_log_group = logs.LogGroup(
            self,
            "ApiAccessLogGroup",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=stateful_removal_policy,
        )

        rest_api = apigw.RestApi(
            self,
            "BoardApi",
            rest_api_name=f"{name_prefix}-api",
            deploy_options=apigw.StageOptions(
                stage_name=stage_name,
                access_log_destination=apigw.LogGroupLogDestination(access_log_group),
                # Standard fields only; do not log headers (e.g., Authorization).
                access_log_format=apigw.AccessLogFormat.json_with_standard_fields(
                    caller=True,
                    http_method=True,
                    ip=True,
                    protocol=True,
                    request_time=True,
                    resource_path=True,
                    response_length=True,
                    status=True,
                    user=True,
                ),
            ),
            cloud_watch_role=True,
        )

        authorizer = apigw.CognitoUserPoolsAuthorizer(
            self,
            "BoardCognitoAuthorizer",
            cognito_user_pools=[user_pool],
        )
        integration = apigw.LambdaIntegration(board_fn)

        def _route(resource: apigw.IResource, *methods: str) -> None:
            for method in methods:
                resource.add_method(
                    method,
                    integration,
                    authorization_type=apigw.AuthorizationType.COGNITO,
                    authorizer=authorizer,
                )

        board = rest_api.root.add_resource("v1").add_resource("board")

        boards = board.add_resource("boards")
        board_lanes = boards.add_resource("{boardId}").add_resource("lanes")
        _route(board_lanes, "GET", "POST")

        lanes = board.add_resource("lanes")
        lane = lanes.add_resource("{laneId}")
        _route(lane, "GET", "PATCH", "DELETE")
        _route(lane.add_resource("cards"), "GET", "POST")

        cards = board.add_resource("cards")
        card = cards.add_resource("{cardId}")
        _route(card, "GET", "PATCH", "DELETE")
        _route(card.add_resource("move"), "POST")
        _route(card.add_resource("audit"), "GET")

        _route(board.add_resource("my").add_resource("activity"), "GET")

        CfnOutput(
            self,
            "BoardInvokeUrl",
            value=f"{rest_api.url}v1/board",
            description="Invoke URL base for board endpoints.",
        )
        CfnOutput(self, "BoardCardsTableName", value=cards_table.table_name)
        CfnOutput(self, "BoardLanesTableName", value=lanes_table.table_name)
        CfnOutput(self, "BoardAuditTableName", value=audit_table.table_name)
        CfnOutput(self, "UserPoolId", value=user_pool.user_pool_id)
        CfnOutput(self, "UserPoolClientId", value=user_pool_client.user_pool_client_id)
