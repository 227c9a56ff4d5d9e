from __future__ import annotations

from dataclasses import dataclass

import httpx

from jfsplitter.core.config import Settings
from jfsplitter.persistence.user_map import IdentityMappingStore
from jfsplitter.services.dispatcher import UpstreamDispatcher
from jfsplitter.services.rewrite import ServiceAuthProfile
from jfsplitter.services.router import ModeRouter
from jfsplitter.services.user_heal import UserMapHealer


@dataclass
class ProxyContext:
    # Process-wide proxy state, built once from settings and handed to the app.
    settings: Settings
    store: IdentityMappingStore
    client: httpx.AsyncClient
    dispatcher: UpstreamDispatcher
    healer: UserMapHealer
    router: ModeRouter

    @classmethod
    def create(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ProxyContext:
        # The user map is loaded before any component that reads it exists.
        store = IdentityMappingStore(settings.usermap_path)
        store.load()
        timeout_s = max(1, settings.upstream_timeout_ms) / 1000.0
        client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(timeout_s),
            follow_redirects=False,
        )
        primary = settings.primary_target()
        secondary = settings.secondary_target()
        dispatcher = UpstreamDispatcher(
            client=client,
            store=store,
            auth_mode=settings.auth_mode,
            auth_profile=ServiceAuthProfile.from_settings(settings),
            timeout_ms=settings.upstream_timeout_ms,
        )
        healer = UserMapHealer(store=store, dispatcher=dispatcher, primary=primary, secondary=secondary)
        router = ModeRouter(
            split_mode=settings.split_mode,
            dispatcher=dispatcher,
            store=store,
            healer=healer,
            primary=primary,
            secondary=secondary,
        )
        return cls(
            settings=settings,
            store=store,
            client=client,
            dispatcher=dispatcher,
            healer=healer,
            router=router,
        )

    async def aclose(self) -> None:
        await self.store.flush()
        await self.client.aclose()
