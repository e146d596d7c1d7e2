"""
Access review service.
"""

from typing import Any, Dict, List, Optional, Tuple

from fastapi import Body, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ConfigurationError, ValidationError

from .audit import AuditAction, AuditSink
from .batching import ImportResult
from .campaigns import (
    CampaignManager,
    CycleRequest,
    ItemActionRequest,
    LaunchRequest,
    ReviewItemService,
)
from .directory import (
    ApplicationImporter,
    CachedIdentityDirectory,
    EntitlementCatalogImporter,
    HttpIdentityDirectory,
    IdentityDirectory,
    IdentityImporter,
    StoreIdentityDirectory,
)
from .persistence import DocumentStore, InMemoryDocumentStore
from .persistence.postgres import PostgresDocumentStore
from .reconciliation import ReconciliationOptions, Reconciler
from .sod import SodPolicyImporter


SERVICE_NAME = "access_review"
SERVICE_PORT = 8020


class AccessReviewService(BaseService):
    """Access review service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        store: Optional[DocumentStore] = None,
        directory: Optional[IdentityDirectory] = None,
    ):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config)

        self.store = store or self._create_store()
        self.directory = directory or self._create_directory()
        self.audit = AuditSink(
            self.store,
            default_actor_id=self.config.default_actor_id,
            default_actor_name=self.config.default_actor_name,
            metrics=self.metrics,
        )
        self.reconciler = Reconciler(
            self.store,
            self.directory,
            portal_url=self.config.sod_portal_url,
            metrics=self.metrics,
            audit=self.audit,
        )
        self.campaigns = CampaignManager(
            self.store,
            self.directory,
            review_due_days=self.config.review_due_days,
            batch_size=self.config.reconcile_batch_size,
            portal_url=self.config.sod_portal_url,
            metrics=self.metrics,
            audit=self.audit,
        )
        self.items = ReviewItemService(
            self.store,
            self.directory,
            self.campaigns,
            max_reassignments=self.config.max_reassignments,
            metrics=self.metrics,
            audit=self.audit,
        )

        self._setup_access_review_routes()

    def _create_store(self) -> DocumentStore:
        backend = self.config.store_backend.lower()
        if backend == "memory":
            return InMemoryDocumentStore()
        if backend == "postgres":
            return PostgresDocumentStore(self.config.postgres_dsn)
        raise ConfigurationError(f"Unknown store backend '{self.config.store_backend}'")

    def _create_directory(self) -> IdentityDirectory:
        if self.config.identity_service_url:
            directory: IdentityDirectory = HttpIdentityDirectory(self.config.identity_service_url)
        else:
            directory = StoreIdentityDirectory(self.store)
        if self.config.identity_cache_enabled:
            directory = CachedIdentityDirectory(
                directory,
                self.config.redis_url,
                ttl_seconds=self.config.identity_cache_ttl_seconds,
            )
        return directory

    def _actor(self, request: Request) -> Tuple[str, str]:
        actor_id = request.headers.get("x-actor-id") or self.config.default_actor_id
        actor_name = request.headers.get("x-actor-name")
        if not actor_name and actor_id == self.config.default_actor_id:
            actor_name = self.config.default_actor_name
        return actor_id, actor_name

    def _setup_access_review_routes(self):
        """Set up access-review routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Access Review Platform - Access Review Service",
                "version": "1.0.0",
                "capabilities": ["reconciliation", "sod", "campaigns", "reassignment"]
            }

        @self.app.post("/accounts/import")
        async def import_accounts(
            request: Request,
            rows: List[Any] = Body(...),
            app_id: str = Query(..., description="Application whose accounts the extract replaces"),
            block_uncorrelated: Optional[bool] = Query(None),
            block_on_conflict: Optional[bool] = Query(None),
            scope: Optional[str] = Query(None, description="SoD held-entitlement scope: app|global"),
            allow_empty: Optional[bool] = Query(None),
            timeout_seconds: Optional[float] = Query(None, gt=0),
        ):
            """Reconcile an application's accounts with an authoritative extract."""
            try:
                options = ReconciliationOptions(
                    block_uncorrelated=self._default(block_uncorrelated, self.config.block_uncorrelated),
                    block_on_conflict=self._default(block_on_conflict, self.config.sod_block_on_conflict),
                    scope=scope or self.config.sod_scope,
                    batch_size=self.config.reconcile_batch_size,
                    timeout_seconds=timeout_seconds or self.config.reconcile_timeout_seconds,
                    allow_empty=self._default(allow_empty, self.config.allow_empty_import),
                )
            except PydanticValidationError as e:
                raise ValidationError("Invalid reconciliation options", {"errors": [err["msg"] for err in e.errors()]})

            actor_id, actor_name = self._actor(request)
            result = await self.reconciler.reconcile(app_id, rows, options, actor_id=actor_id, actor_name=actor_name)
            return JSONResponse(status_code=result.http_status, content=result.to_response())

        @self.app.post("/reviews/launch")
        async def launch_review(request: Request, body: LaunchRequest):
            """Launch a review cycle over an application's accounts."""
            actor_id, actor_name = self._actor(request)
            result = await self.campaigns.launch(
                body.app_id,
                due_date=body.due_date,
                name=body.name,
                force_relaunch=body.force_relaunch,
                actor_id=actor_id,
                actor_name=actor_name,
            )
            return JSONResponse(status_code=result.status.http_status, content=result.model_dump(mode="json"))

        @self.app.post("/reviews/items/action")
        async def item_action(
            request: Request,
            body: ItemActionRequest,
            if_match: Optional[str] = Header(None, alias="If-Match"),
        ):
            """Approve, revoke, remediate or reassign a review item."""
            _, actor_name = self._actor(request)
            item = await self.items.apply_action(
                body,
                if_match,
                actor_id=request.headers.get("x-actor-id") or body.reviewer_id,
                actor_name=actor_name,
            )
            return JSONResponse(
                content=item.model_dump(mode="json"),
                headers={"ETag": item.concurrency_token} if item.concurrency_token else None,
            )

        @self.app.post("/reviews/confirm")
        async def confirm_review(request: Request, body: CycleRequest):
            """Record a reviewer's confirmation that their review is complete."""
            _, actor_name = self._actor(request)
            reviewer_id = body.reviewer_id or request.headers.get("x-actor-id")
            if not reviewer_id:
                raise ValidationError("reviewer_id is required")
            cycle = await self.campaigns.confirm(body.cycle_id, reviewer_id, app_id=body.app_id, actor_name=actor_name)
            return cycle.model_dump(mode="json")

        @self.app.post("/reviews/archive")
        async def archive_review(request: Request, body: CycleRequest):
            """Settle a cycle's counters and archive it when complete."""
            actor_id, actor_name = self._actor(request)
            cycle = await self.campaigns.archive(
                body.cycle_id, app_id=body.app_id, actor_id=actor_id, actor_name=actor_name
            )
            return cycle.model_dump(mode="json")

        @self.app.post("/reviews/recover")
        async def recover_reassignments(request: Request, body: CycleRequest):
            """Finish reassignments interrupted between their steps."""
            actor_id, actor_name = self._actor(request)
            result = await self.items.recover_reassignments(body.cycle_id, actor_id=actor_id, actor_name=actor_name)
            return result.model_dump(mode="json")

        @self.app.post("/identities/import")
        async def import_identities(request: Request, rows: List[Any] = Body(...)):
            """Upsert identities."""
            importer = IdentityImporter(self.store, self.config.reconcile_batch_size)
            result = await importer.import_rows(rows)
            await self._invalidate_cache(CachedIdentityDirectory.IDENTITY_PREFIX)
            return await self._import_response(request, AuditAction.IMPORT_IDENTITIES, result)

        @self.app.post("/applications/import")
        async def import_applications(request: Request, rows: List[Any] = Body(...)):
            """Upsert applications and their owners."""
            importer = ApplicationImporter(self.store, self.config.reconcile_batch_size)
            result = await importer.import_rows(rows)
            await self._invalidate_cache(CachedIdentityDirectory.APPLICATION_PREFIX)
            return await self._import_response(request, AuditAction.IMPORT_APPLICATIONS, result)

        @self.app.post("/entitlements/import")
        async def import_entitlements(
            request: Request,
            rows: List[Any] = Body(...),
            app_id: str = Query(..., description="Application the catalog belongs to"),
        ):
            """Upsert an application's entitlement catalog."""
            importer = EntitlementCatalogImporter(self.store, app_id, self.config.reconcile_batch_size)
            result = await importer.import_rows(rows)
            return await self._import_response(
                request, AuditAction.IMPORT_ENTITLEMENTS, result, {"app_id": app_id}
            )

        @self.app.post("/sod/policies/import")
        async def import_sod_policies(request: Request, rows: List[Any] = Body(...)):
            """Upsert or delete SoD policies."""
            importer = SodPolicyImporter(self.store, self.config.reconcile_batch_size)
            result = await importer.import_rows(rows)
            return await self._import_response(request, AuditAction.IMPORT_SOD_POLICIES, result)

    @staticmethod
    def _default(value: Optional[bool], fallback: bool) -> bool:
        return fallback if value is None else value

    async def _invalidate_cache(self, prefix: str):
        if isinstance(self.directory, CachedIdentityDirectory):
            await self.directory.invalidate(prefix)

    async def _import_response(
        self,
        request: Request,
        action: str,
        result: ImportResult,
        extra: Optional[Dict[str, Any]] = None,
    ) -> JSONResponse:
        actor_id, actor_name = self._actor(request)
        await self.audit.record(actor_id, action, {
            **(extra or {}),
            "status": result.status.value,
            "processed": result.processed,
            "upserted": result.upserted,
            "deleted": result.deleted,
            "failed": result.failed,
        }, actor_name=actor_name)
        return JSONResponse(status_code=result.http_status, content=result.model_dump(mode="json"))

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check access review service dependencies."""
        dependencies = {}
        dependencies["store"] = "ok" if await self.store.health_check() else "error"
        dependencies["identity_directory"] = "ok" if await self.directory.health_check() else "error"
        return dependencies

    async def start(self):
        """Start access review service components."""
        await self.store.start()
        await self.directory.start()
        self.logger.info(
            "Access review service started",
            store_backend=self.config.store_backend,
            directory=type(self.directory).__name__,
        )

    async def stop(self):
        """Stop access review service components."""
        await self.directory.stop()
        await self.store.stop()
        self.logger.info("Access review service stopped")


def create_app():
    """Create access review service application."""
    service = AccessReviewService()
    return service.app


if __name__ == "__main__":
    service = AccessReviewService()
    service.run()
