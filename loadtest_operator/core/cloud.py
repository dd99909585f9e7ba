"""
Cloud control-plane coordination.

The coordinator owns at most one `CloudClient` for the life of the process,
built lazily from a credential stored in the cluster the first time a cloud
run needs it. Abort checks fail closed (never abort on an ambiguous answer);
finalize failures are reported to the caller, which retries on its next pass.
"""

from __future__ import annotations

import asyncio
import logging
from enum import IntEnum
from typing import Any, Callable, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from loadtest_operator.config import settings
from loadtest_operator.core.cluster import ClusterClient
from loadtest_operator.core.errors import CloudAPIError, NotFoundError
from loadtest_operator.models.run import Run

logger = logging.getLogger(__name__)


class CloudRunStatus(IntEnum):
    CREATED = -2
    VALIDATED = -1
    QUEUED = 0
    INITIALIZING = 1
    RUNNING = 2
    FINISHED = 3
    TIMED_OUT = 4
    ABORTED_USER = 5
    ABORTED_SYSTEM = 6
    ABORTED_SCRIPT_ERROR = 7
    ABORTED_THRESHOLD = 8
    ABORTED_LIMIT = 9


class ResultStatus(IntEnum):
    PASSED = 0
    FAILED = 1


class RemoteRunState(BaseModel):
    """Remote state of a test run as reported by the control-plane."""

    id: Optional[int | str] = None
    run_status: int

    @property
    def aborted(self) -> bool:
        return (
            CloudRunStatus.ABORTED_USER
            <= self.run_status
            <= CloudRunStatus.ABORTED_THRESHOLD
        )


class CreatedTestRun(BaseModel):
    reference_id: int | str

    @property
    def test_run_id(self) -> str:
        return str(self.reference_id)


class PLZResources(BaseModel):
    cpu: str = ""
    memory: str = ""


class PLZRegistration(BaseModel):
    """Payload registering a private load zone with the control-plane."""

    load_zone_id: str
    provider_id: str = ""
    resources: PLZResources = Field(default_factory=PLZResources)
    runner_image: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "k6_load_zone_id": self.load_zone_id,
            "provider_id": self.provider_id,
            "pod_tiers": self.resources.model_dump(),
            "config": {"load_runner_image": self.runner_image},
        }


def _server_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or "")
    return ""


class CloudClient:
    """Thin async client for the cloud control-plane endpoints the controller uses."""

    def __init__(
        self,
        token: str,
        host: str,
        *,
        http: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.host = host.rstrip("/")
        self._headers = {"Authorization": f"Token {token}"}
        self._http = http or httpx.AsyncClient()
        self._owns_http = http is None
        self._timeout = (
            settings.CLOUD_REQUEST_TIMEOUT_SECONDS if timeout is None else float(timeout)
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _request(
        self, method: str, path: str, *, payload: Any = None
    ) -> Any:
        url = f"{self.host}{path}"
        try:
            resp = await self._http.request(
                method, url, json=payload, headers=self._headers, timeout=self._timeout
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise CloudAPIError(f"{method} {url} failed: {type(exc).__name__}: {exc}") from exc

        if resp.status_code >= 400:
            raise CloudAPIError(
                f"Received error `{resp.status_code} {resp.reason_phrase}`",
                status_code=resp.status_code,
                server_message=_server_message(resp),
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise CloudAPIError(f"{method} {url} returned invalid JSON") from exc

    async def get_test_run_state(self, test_run_id: str) -> RemoteRunState:
        body = await self._request(
            "GET", f"/loadtests/v4/test_runs({test_run_id})?$select=id,run_status"
        )
        try:
            return RemoteRunState.model_validate(body)
        except ValidationError as exc:
            raise CloudAPIError(
                f"unexpected test run state payload for {test_run_id}"
            ) from exc

    async def create_test_run(self, name: str, instances: int) -> str:
        """Create a remote test run and return its id."""
        body = await self._request(
            "POST",
            "/v1/tests",
            payload={"name": name, "instances": instances, "thresholds": {}},
        )
        try:
            return CreatedTestRun.model_validate(body).test_run_id
        except ValidationError as exc:
            raise CloudAPIError(f"unexpected create test run payload for {name}") from exc

    async def finish_test_run(self, test_run_id: str) -> None:
        await self._request(
            "POST",
            f"/v1/tests/{test_run_id}",
            payload={
                "result_status": int(ResultStatus.PASSED),
                "run_status": int(CloudRunStatus.FINISHED),
                "thresholds": {},
            },
        )

    async def register_plz(self, registration: PLZRegistration) -> None:
        await self._request("POST", "/v1/load-zones", payload=registration.to_payload())

    async def deregister_plz(self, name: str) -> None:
        await self._request("DELETE", f"/v1/load-zones/{name}")


ClientFactory = Callable[[str, str], CloudClient]


class CloudCoordinator:
    def __init__(
        self,
        cluster: ClusterClient,
        *,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self._cluster = cluster
        self._client_factory: ClientFactory = client_factory or CloudClient
        self._client: Optional[CloudClient] = None
        self._client_lock = asyncio.Lock()

    @property
    def client(self) -> Optional[CloudClient]:
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ensure_client(self, run: Run) -> bool:
        """
        Make sure the shared cloud client exists.

        Returns:
            False if the run's credential does not exist yet (caller should
            retry later); True once a client is available.

        Raises:
            ClusterError: the credential lookup failed for another reason.
        """
        if self._client is not None:
            return True

        async with self._client_lock:
            if self._client is not None:
                return True

            try:
                secret = await self._cluster.get_secret(run.namespace, run.spec.token)
            except NotFoundError:
                logger.info("Token `%s` is not found yet.", run.spec.token)
                return False

            token = secret.data.get(settings.CLOUD_TOKEN_SECRET_KEY, "")
            if not token:
                logger.info(
                    "Token `%s` has no `%s` key yet.",
                    run.spec.token,
                    settings.CLOUD_TOKEN_SECRET_KEY,
                )
                return False

            host = (
                run.spec.env_value(settings.CLOUD_HOST_ENV_VAR)
                or settings.CLOUD_DEFAULT_HOST
            )
            self._client = self._client_factory(token, host)
            logger.info("Cloud client created for host %s", host)
            return True

    async def should_abort(self, run: Run) -> bool:
        """Ask the control-plane whether the run was aborted remotely. Fails closed."""
        test_run_id = run.status.test_run_id
        if not test_run_id:
            logger.error("Trying to get state of test run with empty test run ID")
            return False
        if self._client is None:
            logger.error("Trying to get state of test run %s without a cloud client", test_run_id)
            return False

        try:
            state = await self._client.get_test_run_state(test_run_id)
        except CloudAPIError as exc:
            logger.error("Failed to get test run state: %s", exc)
            return False

        logger.info("Received test run status %d", state.run_status)
        return state.aborted

    async def create_test_run(self, run: Run) -> Optional[str]:
        """
        Create the remote test run for a cloud run.

        Returns:
            The new test run id, or None if the credential is not there yet.

        Raises:
            CloudAPIError: the control-plane rejected the request.
        """
        if not await self.ensure_client(run) or self._client is None:
            return None
        test_run_id = await self._client.create_test_run(
            run.name, run.spec.parallelism
        )
        logger.info("Created cloud test run %s", test_run_id)
        return test_run_id

    async def finalize(self, run: Run) -> bool:
        """Finalize the remote test run. Returns False (logged) on any failure."""
        test_run_id = run.status.test_run_id
        if not test_run_id:
            logger.error("Trying to finalize test run with empty test run ID")
            return False

        try:
            if not await self.ensure_client(run) or self._client is None:
                logger.error("Cannot finalize test run %s: no cloud token yet", test_run_id)
                return False
            await self._client.finish_test_run(test_run_id)
        except Exception as exc:
            logger.error("Failed to finalize the test run with cloud output: %s", exc)
            return False

        logger.info("Cloud test run %s was finalized successfully", test_run_id)
        return True
