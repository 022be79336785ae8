"""
Unit tests for the default fleet definition and its plan.
"""

from __future__ import annotations

import pytest

from fleetplan.credentials import CredentialBinder
from fleetplan.fleet import TEN_YEARS, SmtpSettings, default_fleet
from fleetplan.patterns import matches
from fleetplan.planner import FleetPlanner


@pytest.fixture
def fleet():
    return default_fleet(name="demo", namespace="demo.internal", site_url="https://app.example.com")


@pytest.fixture
def plan(fleet, root):
    return FleetPlanner(fleet, binder=CredentialBinder(root=root, namespace=fleet.namespace)).plan()


class TestDefaultFleet:
    """Tests for the declared fleet."""

    def test_services(self, fleet) -> None:
        """Eight services with their ports."""
        assert {s.name: s.port for s in fleet.services} == {
            "gateway": 8000,
            "auth": 9999,
            "rest": 3000,
            "graphql": 5000,
            "realtime": 4000,
            "storage": 5000,
            "imgproxy": 5001,
            "meta": 8080,
        }

    def test_graphql_disabled_realtime_pinned(self, fleet) -> None:
        """graphql is declared but off, realtime runs exactly once."""
        assert fleet.service("graphql").disabled
        realtime = fleet.service("realtime")
        assert (realtime.min_instances, realtime.max_instances) == (1, 1)

    def test_keys_last_ten_years(self, fleet) -> None:
        """Both role keys are long-lived."""
        assert {t.role: t.expires_in for t in fleet.tokens} == {
            "anon": TEN_YEARS,
            "service_role": TEN_YEARS,
        }

    def test_auth_parameter_rule(self, fleet) -> None:
        """Auth parameter updates redeploy auth only."""
        rule = next(t for t in fleet.triggers if t.name == "auth-parameter-changed")
        event = {
            "source": "aws.ssm",
            "detail-type": "Parameter Store Change",
            "detail": {"name": "/demo/auth/site-url", "operation": "Update"},
        }

        assert matches(rule.pattern, event)
        assert rule.services == frozenset({"auth"})

    def test_database_rotation_rule(self, fleet) -> None:
        """Database rotation redeploys every database client."""
        rule = next(t for t in fleet.triggers if t.name == "database-secret-rotated")

        assert rule.services == frozenset({"auth", "rest", "graphql", "realtime", "storage", "meta"})


    def test_custom_storage_and_smtp(self) -> None:
        """Region, bucket, webhook and mail relay are parameters."""
        fleet = default_fleet(
            name="demo",
            region="eu-west-2",
            storage_bucket="assets",
            cdn_webhook_url="https://cdn.example.com/purge",
            smtp=SmtpSettings(host="smtp.example.com", port=587, admin_email="ops@example.com"),
        )

        storage = fleet.service("storage").environment
        auth = fleet.service("auth").environment
        assert (storage["REGION"], storage["GLOBAL_S3_BUCKET"]) == ("eu-west-2", "assets")
        assert storage["WEBHOOK_URL"] == "https://cdn.example.com/purge"
        assert (auth["GOTRUE_SMTP_HOST"], auth["GOTRUE_SMTP_PORT"]) == ("smtp.example.com", "587")
        assert auth["GOTRUE_SMTP_ADMIN_EMAIL"] == "ops@example.com"


class TestDefaultFleetPlan:
    """Tests for planning the default fleet."""

    def test_plans_cleanly(self, plan) -> None:
        """Every service is planned; graphql is disabled."""
        assert len(plan.services) == 8
        assert plan.summary()["disabled"] == ["graphql"]

    def test_gateway_wiring(self, plan) -> None:
        """The gateway gets every API endpoint."""
        env = plan.service("gateway").environment

        assert env["SUPABASE_AUTH_URL"] == "http://auth.demo.internal:9999/"
        assert env["SUPABASE_REST_URL"] == "http://rest.demo.internal:3000/"
        assert env["SUPABASE_GRAPHQL_URL"] == "http://graphql.demo.internal:5000/graphql"
        assert env["SUPABASE_REALTIME_URL"] == "http://realtime.demo.internal:4000/socket/"
        assert env["SUPABASE_STORAGE_URL"] == "http://storage.demo.internal:5000/"
        assert env["SUPABASE_META_HOST"] == "http://meta.demo.internal:8080/"
        assert env["KONG_STATUS_LISTEN"] == "0.0.0.0:8100"

    def test_storage_wiring(self, plan) -> None:
        """Storage reaches rest and imgproxy and runs on x86_64."""
        storage = plan.service("storage")

        assert storage.environment["POSTGREST_URL"] == "http://rest.demo.internal:3000"
        assert storage.environment["IMGPROXY_URL"] == "http://imgproxy.demo.internal:5001"
        assert storage.cpu_architecture == "X86_64"

    def test_storage_bucket_and_webhook(self, plan) -> None:
        """Storage gets its region, bucket and cache webhook."""
        env = plan.service("storage").environment

        assert env["REGION"] == "us-east-1"
        assert env["GLOBAL_S3_BUCKET"] == "demo-storage"
        assert env["WEBHOOK_URL"] == ""

    def test_auth_smtp_defaults_to_ses(self, plan) -> None:
        """Auth mails through SES in the fleet region unless told otherwise."""
        env = plan.service("auth").environment

        assert env["GOTRUE_SMTP_HOST"] == "email-smtp.us-east-1.amazonaws.com"
        assert env["GOTRUE_SMTP_PORT"] == "465"
        assert env["GOTRUE_SMTP_ADMIN_EMAIL"] == "noreply@example.com"

    def test_verifiers_only_see_public_key(self, plan) -> None:
        """Every service that checks keys is bound to the public key reference."""
        verification = {
            (name, b.env)
            for name, service in plan.services.items()
            for b in service.secrets
            if b.kind == "verification_key"
        }

        assert verification == {
            ("auth", "GOTRUE_JWT_SECRET"),
            ("rest", "PGRST_JWT_SECRET"),
            ("graphql", "JWT_SECRET"),
            ("realtime", "API_JWT_SECRET"),
            ("storage", "PGRST_JWT_SECRET"),
        }
        assert {
            b.reference.uri
            for service in plan.services.values()
            for b in service.secrets
            if b.kind == "verification_key"
        } == {"ssm:/demo.internal/jwt-public-key"}

    def test_ingress_rules(self, plan) -> None:
        """Load balancer reaches the gateway and its status port."""
        keys = {r.key for r in plan.network.rules_to("gateway")}

        assert keys == {("load-balancer", "gateway", 8000), ("load-balancer", "gateway", 8100)}

    def test_disabled_graphql_still_reachable_and_bound(self, plan) -> None:
        """Disabled services keep network rules and secrets."""
        graphql = plan.service("graphql")

        assert {r.source for r in plan.network.rules_to("graphql")} == {"gateway"}
        assert {b.env for b in graphql.secrets} == {"DATABASE_URL", "JWT_SECRET"}

    def test_keys_shared_by_gateway_and_storage(self, plan) -> None:
        """The anon key is derived once and bound twice."""
        anon = next(b for b in plan.service("gateway").secrets if b.env == "ANON_KEY")

        assert plan.tokens.consumers_of(anon.reference) == {"gateway", "storage"}
        assert len(plan.tokens.tokens) == 2

    def test_realtime_command_and_secrets(self, plan) -> None:
        """Realtime reads database credentials field by field."""
        realtime = plan.service("realtime")
        refs = {b.env: b.reference.uri for b in realtime.secrets}

        assert refs["DB_PASSWORD"] == "secretsmanager:/demo.internal/database/credentials#password"
        assert realtime.command is not None
