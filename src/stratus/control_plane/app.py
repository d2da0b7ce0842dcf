"""FastAPI application exposing the runner webhook and self-destruct callback."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional, Sequence

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse
from opentelemetry import trace
from pydantic import ValidationError

from ..common.http_security import BodyTooLarge, get_client_ip, read_capped_body, require_metrics_access
from ..common.metrics import (
    CALLBACK_DELETES,
    GLOBAL_REGISTRY,
    PROVISIONS_IN_FLIGHT,
    REQUEST_LATENCY,
    WEBHOOK_OUTCOMES,
)
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import ControlPlaneSettings
from .admission import (
    AdmissionController,
    AdmissionDecision,
    AdmissionReason,
    ConcurrencyGate,
    SlidingWindowRateLimiter,
)
from .bootstrap import BootstrapRenderer
from .callback import CALLBACK_SECRET_HEADER, CallbackHandler
from .digitalocean import RUNNER_TAG, ComputeProvider, DigitalOceanClient
from .github import GitHubAppCredentialIssuer
from .provisioner import ProvisioningOrchestrator
from .reaper import run_reaper_loop
from .secrets import SecretStore, SSMParameterStore

LOGGER = structlog.get_logger("stratus.control_plane")
TRACER = trace.get_tracer("stratus.control_plane")

SIGNATURE_HEADER = "x-hub-signature-256"
EVENT_HEADER = "x-github-event"


class AppState:
    """Container for application-level shared resources."""

    def __init__(
        self,
        admission: AdmissionController,
        callbacks: CallbackHandler,
        provider: ComputeProvider,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        max_webhook_body_bytes: int = 1024 * 1024,
        trusted_proxies: Sequence[str] = (),
        metrics_token: Optional[str] = None,
        reaper_interval: float = 0,
        reaper_max_age: timedelta = timedelta(minutes=60),
    ) -> None:
        self.admission = admission
        self.callbacks = callbacks
        self.provider = provider
        self.http_client = http_client
        self.max_webhook_body_bytes = max_webhook_body_bytes
        self.trusted_proxies = list(trusted_proxies)
        self.metrics_token = metrics_token
        self.reaper_interval = reaper_interval
        self.reaper_max_age = reaper_max_age


def build_state(
    settings: ControlPlaneSettings,
    http_client: httpx.AsyncClient,
    *,
    secret_store: Optional[SecretStore] = None,
) -> AppState:
    """Wire the production collaborators described by ``settings``."""

    if not settings.trusted_proxy_cidrs:
        LOGGER.warning(
            "X-Forwarded-For is trusted from any peer; set STRATUS_TRUSTED_PROXY_CIDRS to restrict it",
        )
    private_key = settings.github_app_private_key_file.read_text(encoding="utf-8")
    credentials = GitHubAppCredentialIssuer(
        app_id=settings.github_app_id,
        installation_id=settings.github_app_installation_id,
        private_key=private_key,
        http_client=http_client,
        api_base=str(settings.github_api_url).rstrip("/"),
    )
    provider = DigitalOceanClient(
        token=settings.do_token.get_secret_value(),
        http_client=http_client,
        api_base=str(settings.do_api_url).rstrip("/"),
    )
    if secret_store is None:
        secret_store = SSMParameterStore(region_name=settings.aws_region)
    orchestrator = ProvisioningOrchestrator(
        credentials=credentials,
        secrets=secret_store,
        provider=provider,
        renderer=BootstrapRenderer(settings.bootstrap_template),
        token_parameter_prefix=settings.token_parameter_prefix,
        callback_url=str(settings.callback_url),
        callback_secret_parameter=settings.callback_secret_parameter,
        runner_version=settings.runner_version,
        region=settings.do_region,
        size=settings.do_size,
        image=settings.do_image,
        ssh_keys=settings.do_ssh_fingerprints,
    )
    admission = AdmissionController(
        webhook_secret=settings.webhook_secret.get_secret_value(),
        required_label=settings.required_label,
        rate_limiter=SlidingWindowRateLimiter(settings.repo_rate_limit, settings.repo_rate_window_seconds),
        gate=ConcurrencyGate(settings.max_concurrent_provisions),
        provisioner=orchestrator,
        provision_timeout=settings.provision_timeout_seconds,
    )
    callbacks = CallbackHandler(
        secret=settings.callback_secret.get_secret_value(),
        provider=provider,
        timeout=settings.callback_timeout_seconds,
    )
    return AppState(
        admission,
        callbacks,
        provider,
        http_client=http_client,
        max_webhook_body_bytes=settings.max_webhook_body_bytes,
        trusted_proxies=settings.trusted_proxy_cidrs,
        metrics_token=settings.metrics_token.get_secret_value() if settings.metrics_token else None,
        reaper_interval=settings.reaper_interval_seconds,
        reaper_max_age=timedelta(minutes=settings.reaper_max_age_minutes),
    )


def _attach_state(app: FastAPI, container: AppState) -> None:
    app.state.container = container
    PROVISIONS_IN_FLIGHT.set_supplier(lambda: container.admission.gate.in_use)


def _get_state(request: Request) -> AppState:
    state: AppState = request.app.state.container  # type: ignore[attr-defined]
    return state


@asynccontextmanager
async def lifespan(app: FastAPI):
    container: Optional[AppState] = getattr(app.state, "container", None)
    http_client: Optional[httpx.AsyncClient] = None
    if container is None:
        settings = ControlPlaneSettings()
        configure_logging("stratus.control_plane", settings.log_level)
        configure_tracing(
            service_name="stratus.control_plane",
            endpoint=settings.otel_exporter_endpoint,
            headers=settings.otel_exporter_headers,
            sampler_ratio=settings.otel_sampler_ratio,
        )
        http_client = httpx.AsyncClient(timeout=20.0)
        try:
            container = build_state(settings, http_client)
        except Exception as exc:
            LOGGER.error("Failed to initialise control plane", error=str(exc))
            await http_client.aclose()
            raise
        _attach_state(app, container)

    reaper_task: Optional[asyncio.Task] = None
    if container.reaper_interval > 0:
        reaper_task = asyncio.create_task(
            run_reaper_loop(
                container.provider,
                interval=container.reaper_interval,
                max_age=container.reaper_max_age,
                tag=RUNNER_TAG,
            )
        )
        LOGGER.info("Started stale droplet sweep loop", interval_seconds=container.reaper_interval)

    try:
        yield
    finally:
        if reaper_task is not None:
            reaper_task.cancel()
            try:
                await reaper_task
            except asyncio.CancelledError:
                pass
        await container.admission.drain()
        if http_client is not None:
            await http_client.aclose()


def create_app(container: Optional[AppState] = None) -> FastAPI:
    """Build the API. Without ``container`` the lifespan wires everything from the environment."""

    app = FastAPI(lifespan=lifespan)
    if container is not None:
        _attach_state(app, container)
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def record_request_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY.observe(duration)
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY.observe(duration)

        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)

        return response

    @app.post("/webhook")
    async def github_webhook(
        request: Request,
        state: AppState = Depends(_get_state),
    ) -> Response:
        with TRACER.start_as_current_span("control_plane.webhook") as span:
            client_ip = get_client_ip(request, state.trusted_proxies)
            try:
                body = await read_capped_body(request, state.max_webhook_body_bytes)
            except BodyTooLarge as exc:
                LOGGER.warning("Webhook body too large", client_ip=client_ip, limit=exc.limit)
                decision = AdmissionDecision.reject(AdmissionReason.OVERSIZED)
            else:
                decision = state.admission.admit(
                    body,
                    signature=request.headers.get(SIGNATURE_HEADER),
                    event_type=request.headers.get(EVENT_HEADER),
                    client_ip=client_ip,
                )

            WEBHOOK_OUTCOMES.inc(decision.reason.value)
            span.set_attribute("stratus.admission", decision.reason.value)
            if decision.event is not None:
                span.set_attribute("stratus.job_id", decision.event.workflow_job.id)
                span.set_attribute("stratus.repo", decision.event.repository.full_name)
            if decision.is_error:
                raise HTTPException(status_code=decision.status_code, detail=decision.detail)
            return PlainTextResponse(decision.detail, status_code=decision.status_code)

    @app.post("/callback/destroy")
    async def destroy_callback(
        request: Request,
        state: AppState = Depends(_get_state),
    ) -> Response:
        client_ip = get_client_ip(request, state.trusted_proxies)
        callbacks = state.callbacks
        if not callbacks.authenticate(request.headers.get(CALLBACK_SECRET_HEADER), client_ip):
            CALLBACK_DELETES.inc("unauthorized")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")

        try:
            body = await read_capped_body(request, callbacks.max_body_bytes)
            payload = callbacks.parse(body)
        except (BodyTooLarge, ValidationError) as exc:
            CALLBACK_DELETES.inc("invalid")
            LOGGER.warning("Invalid callback payload", client_ip=client_ip, error=str(exc))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid request") from exc

        if not await callbacks.destroy(payload.droplet_id):
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="failed to destroy droplet")
        return PlainTextResponse("ok")

    @app.get("/health", response_class=PlainTextResponse)
    async def health_check() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(
        request: Request,
        state: AppState = Depends(_get_state),
    ) -> PlainTextResponse:
        require_metrics_access(request, state.metrics_token)
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    return app
