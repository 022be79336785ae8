"""
The default backend fleet.

Eight services behind one load balancer and CDN, sharing one Postgres
database and one signing key pair:

- gateway   API gateway (Kong), the only service the load balancer reaches
- auth      auth service (GoTrue)
- rest      relational-query API (PostgREST)
- graphql   GraphQL API (PostGraphile), declared but disabled by default
- realtime  realtime/event service, pinned to a single instance
- storage   object-storage API (x86_64 only)
- imgproxy  image-transform service used by storage
- meta      metadata API (postgres-meta)

The database bootstrap script (roles, schemas, extensions, statement
timeouts) must have run before any of these connect.
"""

from __future__ import annotations

from dataclasses import dataclass

from .models import (
    DEFAULT_NAMESPACE,
    VERIFICATION_KEY_REF,
    CpuArchitecture,
    DatabaseSpec,
    DependencyEdge,
    HealthCheckSpec,
    LoadBalancerSpec,
    SecretRef,
    SecretReference,
    ServiceDescriptor,
    ServiceFleetSpec,
    TokenSpec,
    TriggerRule,
)

TEN_YEARS = 10 * 365 * 24 * 3600

ANON_KEY = "anon-key"
SERVICE_ROLE_KEY = "service-role-key"


@dataclass(frozen=True)
class SmtpSettings:
    """Mail relay auth sends through. Credentials come from the secret store."""

    host: str
    port: int = 465
    admin_email: str = "noreply@example.com"


def _wget(port: int, path: str, interval: int = 10) -> HealthCheckSpec:
    return HealthCheckSpec(
        command=(
            "CMD-SHELL",
            f"wget --no-verbose --tries=1 --spider http://localhost:{port}{path} || exit 1",
        ),
        interval=interval,
        timeout=interval,
        retries=3,
    )


def _external_secrets(namespace: str) -> dict[str, SecretReference]:
    db_secret = f"/{namespace}/database/credentials"
    return {
        "db-url": SecretReference(store="ssm", key=f"/{namespace}/database/url/writer"),
        "db-url-auth": SecretReference(store="ssm", key=f"/{namespace}/database/url/writer-auth"),
        "db-host": SecretReference(store="secretsmanager", key=db_secret, field="host"),
        "db-port": SecretReference(store="secretsmanager", key=db_secret, field="port"),
        "db-name": SecretReference(store="secretsmanager", key=db_secret, field="dbname"),
        "db-user": SecretReference(store="secretsmanager", key=db_secret, field="username"),
        "db-password": SecretReference(store="secretsmanager", key=db_secret, field="password"),
        "smtp-username": SecretReference(
            store="secretsmanager", key=f"/{namespace}/smtp", field="username"
        ),
        "smtp-password": SecretReference(
            store="secretsmanager", key=f"/{namespace}/smtp", field="password"
        ),
        "realtime-key-base": SecretReference(
            store="secretsmanager", key=f"/{namespace}/realtime/secret-key-base"
        ),
    }


def _services(
    site_url: str,
    api_external_url: str,
    redirect_urls: str,
    disable_signup: bool,
    jwt_expiry: int,
    password_min_length: int,
    sender_name: str,
    smtp: SmtpSettings,
    region: str,
    storage_bucket: str,
    cdn_webhook_url: str,
) -> tuple[ServiceDescriptor, ...]:
    gateway = ServiceDescriptor(
        name="gateway",
        port=8000,
        image="public.ecr.aws/u3p7q2r8/kong:latest",
        description="API gateway",
        environment={
            "KONG_DNS_ORDER": "LAST,A,CNAME",
            "KONG_PLUGINS": "request-transformer,cors,key-auth,acl",
            "KONG_STATUS_LISTEN": "0.0.0.0:8100",
        },
        secrets=(
            SecretRef(env="ANON_KEY", ref=ANON_KEY),
            SecretRef(env="SERVICE_KEY", ref=SERVICE_ROLE_KEY),
        ),
        health_check=HealthCheckSpec(command=("CMD", "kong", "health")),
    )

    auth = ServiceDescriptor(
        name="auth",
        port=9999,
        image="public.ecr.aws/supabase/gotrue:v2.60.2",
        description="Auth API",
        environment={
            "GOTRUE_SITE_URL": site_url,
            "GOTRUE_URI_ALLOW_LIST": redirect_urls,
            "GOTRUE_DISABLE_SIGNUP": str(disable_signup).lower(),
            "GOTRUE_EXTERNAL_EMAIL_ENABLED": "true",
            "GOTRUE_EXTERNAL_PHONE_ENABLED": "false",
            "GOTRUE_RATE_LIMIT_EMAIL_SENT": "3600",
            "GOTRUE_PASSWORD_MIN_LENGTH": str(password_min_length),
            "GOTRUE_API_HOST": "0.0.0.0",
            "GOTRUE_API_PORT": "9999",
            "API_EXTERNAL_URL": api_external_url,
            "GOTRUE_DB_DRIVER": "postgres",
            "GOTRUE_JWT_EXP": str(jwt_expiry),
            "GOTRUE_JWT_AUD": "authenticated",
            "GOTRUE_JWT_ADMIN_ROLES": "service_role",
            "GOTRUE_JWT_DEFAULT_GROUP_NAME": "authenticated",
            "GOTRUE_SMTP_ADMIN_EMAIL": smtp.admin_email,
            "GOTRUE_SMTP_HOST": smtp.host,
            "GOTRUE_SMTP_PORT": str(smtp.port),
            "GOTRUE_SMTP_SENDER_NAME": sender_name,
            "GOTRUE_MAILER_AUTOCONFIRM": "false",
            "GOTRUE_MAILER_URLPATHS_INVITE": "/auth/v1/verify",
            "GOTRUE_MAILER_URLPATHS_CONFIRMATION": "/auth/v1/verify",
            "GOTRUE_MAILER_URLPATHS_RECOVERY": "/auth/v1/verify",
            "GOTRUE_MAILER_URLPATHS_EMAIL_CHANGE": "/auth/v1/verify",
            "GOTRUE_SMS_AUTOCONFIRM": "true",
        },
        secrets=(
            SecretRef(env="GOTRUE_DB_DATABASE_URL", ref="db-url-auth"),
            SecretRef(env="GOTRUE_JWT_SECRET", ref=VERIFICATION_KEY_REF),
            SecretRef(env="GOTRUE_SMTP_USER", ref="smtp-username"),
            SecretRef(env="GOTRUE_SMTP_PASS", ref="smtp-password"),
        ),
        health_check=_wget(9999, "/health"),
        connects_database=True,
    )

    rest = ServiceDescriptor(
        name="rest",
        port=3000,
        image="public.ecr.aws/supabase/postgrest:v10.1.2",
        description="RESTful API",
        environment={
            "PGRST_DB_SCHEMAS": "public,storage,graphql_public",
            "PGRST_DB_ANON_ROLE": "anon",
            "PGRST_DB_USE_LEGACY_GUCS": "false",
        },
        secrets=(
            SecretRef(env="PGRST_DB_URI", ref="db-url"),
            SecretRef(env="PGRST_JWT_SECRET", ref=VERIFICATION_KEY_REF),
        ),
        connects_database=True,
    )

    graphql = ServiceDescriptor(
        name="graphql",
        port=5000,
        image="public.ecr.aws/u3p7q2r8/postgraphile:latest",
        description="GraphQL API",
        environment={
            "PG_GRAPHIQL": "false",
            "PG_ENHANCE_GRAPHIQL": "false",
            "PG_IGNORE_RBAC": "false",
        },
        secrets=(
            SecretRef(env="DATABASE_URL", ref="db-url"),
            SecretRef(env="JWT_SECRET", ref=VERIFICATION_KEY_REF),
        ),
        health_check=_wget(5000, "/health", interval=5),
        min_instances=0,
        max_instances=0,
        connects_database=True,
    )

    realtime = ServiceDescriptor(
        name="realtime",
        port=4000,
        image="public.ecr.aws/supabase/realtime:v2.12.2",
        description="Realtime API",
        environment={
            "PORT": "4000",
            "ERL_AFLAGS": "-proto_dist inet_tcp",
            "DB_AFTER_CONNECT_QUERY": "SET search_path TO _realtime",
            "DB_ENC_KEY": "supabaserealtime",
        },
        secrets=(
            SecretRef(env="API_JWT_SECRET", ref=VERIFICATION_KEY_REF),
            SecretRef(env="SECRET_KEY_BASE", ref="realtime-key-base"),
            SecretRef(env="DB_HOST", ref="db-host"),
            SecretRef(env="DB_PORT", ref="db-port"),
            SecretRef(env="DB_NAME", ref="db-name"),
            SecretRef(env="DB_USER", ref="db-user"),
            SecretRef(env="DB_PASSWORD", ref="db-password"),
        ),
        command=(
            "sh",
            "-c",
            "/app/bin/migrate && /app/bin/realtime eval 'Realtime.Release.seeds(Realtime.Repo)'"
            " && /app/bin/server",
        ),
        min_instances=1,
        max_instances=1,
        connects_database=True,
    )

    storage = ServiceDescriptor(
        name="storage",
        port=5000,
        image="public.ecr.aws/supabase/storage-api:v0.37.3",
        description="Storage API",
        environment={
            "PGOPTIONS": "-c search_path=storage,public",
            "FILE_SIZE_LIMIT": "52428800",
            "TENANT_ID": "stub",
            "IS_MULTITENANT": "false",
            "STORAGE_BACKEND": "s3",
            "ENABLE_QUEUE_EVENTS": "true",
            "REGION": region,
            "GLOBAL_S3_BUCKET": storage_bucket,
            "WEBHOOK_URL": cdn_webhook_url,
        },
        secrets=(
            SecretRef(env="ANON_KEY", ref=ANON_KEY),
            SecretRef(env="SERVICE_KEY", ref=SERVICE_ROLE_KEY),
            SecretRef(env="PGRST_JWT_SECRET", ref=VERIFICATION_KEY_REF),
            SecretRef(env="DATABASE_URL", ref="db-url"),
        ),
        health_check=_wget(5000, "/status"),
        cpu_architecture=CpuArchitecture.X86_64,
        connects_database=True,
    )

    imgproxy = ServiceDescriptor(
        name="imgproxy",
        port=5001,
        image="public.ecr.aws/supabase/imgproxy:v1.1.2",
        description="Image transformation",
        environment={
            "IMGPROXY_BIND": ":5001",
            "IMGPROXY_LOCAL_FILESYSTEM_ROOT": "/",
            "IMGPROXY_USE_ETAG": "true",
        },
    )

    meta = ServiceDescriptor(
        name="meta",
        port=8080,
        image="public.ecr.aws/supabase/postgres-meta:v0.64.4",
        description="Postgres metadata API",
        environment={
            "PG_META_PORT": "8080",
            "PG_META_DB_USER": "supabase_admin",
        },
        secrets=(
            SecretRef(env="PG_META_DB_HOST", ref="db-host"),
            SecretRef(env="PG_META_DB_PORT", ref="db-port"),
            SecretRef(env="PG_META_DB_NAME", ref="db-name"),
            SecretRef(env="PG_META_DB_PASSWORD", ref="db-password"),
        ),
        connects_database=True,
    )

    return (gateway, auth, rest, graphql, realtime, storage, imgproxy, meta)


EDGES: tuple[DependencyEdge, ...] = (
    DependencyEdge(
        source="gateway", target="auth", port=9999, env_var="SUPABASE_AUTH_URL", path="/"
    ),
    DependencyEdge(
        source="gateway", target="rest", port=3000, env_var="SUPABASE_REST_URL", path="/"
    ),
    DependencyEdge(
        source="gateway",
        target="graphql",
        port=5000,
        env_var="SUPABASE_GRAPHQL_URL",
        path="/graphql",
    ),
    DependencyEdge(
        source="gateway",
        target="realtime",
        port=4000,
        env_var="SUPABASE_REALTIME_URL",
        path="/socket/",
    ),
    DependencyEdge(
        source="gateway", target="storage", port=5000, env_var="SUPABASE_STORAGE_URL", path="/"
    ),
    DependencyEdge(
        source="gateway", target="meta", port=8080, env_var="SUPABASE_META_HOST", path="/"
    ),
    DependencyEdge(source="auth", target="rest", port=3000),
    DependencyEdge(source="storage", target="rest", port=3000, env_var="POSTGREST_URL"),
    DependencyEdge(source="storage", target="imgproxy", port=5001, env_var="IMGPROXY_URL"),
)


def _triggers(name: str, services: tuple[ServiceDescriptor, ...]) -> tuple[TriggerRule, ...]:
    database_clients = frozenset(s.name for s in services if s.connects_database)
    key_holders = frozenset(
        s.name
        for s in services
        if any(r.ref in (VERIFICATION_KEY_REF, ANON_KEY, SERVICE_ROLE_KEY) for r in s.secrets)
    )
    return (
        TriggerRule(
            name="auth-parameter-changed",
            description="Auth parameter changed",
            pattern={
                "source": ["aws.ssm"],
                "detail-type": ["Parameter Store Change"],
                "detail": {
                    "name": [{"prefix": f"/{name}/auth/"}],
                    "operation": ["Update"],
                },
            },
            services=frozenset({"auth"}),
        ),
        TriggerRule(
            name="database-secret-rotated",
            description="Database credentials rotated",
            pattern={
                "source": ["aws.secretsmanager"],
                "detail": {"eventName": ["RotationSucceeded"]},
            },
            services=database_clients,
        ),
        TriggerRule(
            name="signing-key-rotated",
            description="Root signing key rotated",
            pattern={"source": ["fleet.credentials"], "detail-type": ["Signing Key Rotated"]},
            services=key_holders,
        ),
    )


def default_fleet(
    name: str = "fleet",
    namespace: str = DEFAULT_NAMESPACE,
    site_url: str = "http://localhost:3000",
    api_external_url: str = "http://localhost:8000",
    redirect_urls: str = "",
    disable_signup: bool = False,
    jwt_expiry: int = 3600,
    password_min_length: int = 8,
    sender_name: str = "Fleet",
    issuer: str | None = None,
    region: str = "us-east-1",
    storage_bucket: str | None = None,
    cdn_webhook_url: str = "",
    smtp: SmtpSettings | None = None,
) -> ServiceFleetSpec:
    """
    Build the default eight-service fleet.

    Args:
        issuer: Issuer of the anon/service_role keys; the planner's
            default_issuer when None
        storage_bucket: Object bucket for storage; "<name>-storage" when None
        cdn_webhook_url: Cache-invalidation webhook storage calls on changes
        smtp: Outgoing mail relay for auth; SES in `region` when None
    """
    services = _services(
        site_url=site_url,
        api_external_url=api_external_url,
        redirect_urls=redirect_urls,
        disable_signup=disable_signup,
        jwt_expiry=jwt_expiry,
        password_min_length=password_min_length,
        sender_name=sender_name,
        smtp=smtp or SmtpSettings(host=f"email-smtp.{region}.amazonaws.com"),
        region=region,
        storage_bucket=storage_bucket or f"{name}-storage",
        cdn_webhook_url=cdn_webhook_url,
    )
    return ServiceFleetSpec(
        name=name,
        namespace=namespace,
        services=services,
        edges=EDGES,
        triggers=_triggers(name, services),
        tokens=(
            TokenSpec(name=ANON_KEY, role="anon", issuer=issuer, expires_in=TEN_YEARS),
            TokenSpec(name=SERVICE_ROLE_KEY, role="service_role", issuer=issuer, expires_in=TEN_YEARS),
        ),
        external_secrets=_external_secrets(namespace),
        database=DatabaseSpec(),
        load_balancer=LoadBalancerSpec(target="gateway", health_check_port=8100),
    )
