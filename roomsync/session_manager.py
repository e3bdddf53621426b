"""Session lifecycle: credentials, start, close and logout.

State machine::

    NEEDS_CREDENTIALS -> NOT_STARTED -> STARTING -> STARTED
            ^                                          |
            +------------------ logout ----------------+

A failed start leaves the state at STARTING; calling ``start`` again is
the retry.
"""

import asyncio
import logging
from typing import Callable, Optional

from nio import AsyncClient, AsyncClientConfig, LoginResponse

from roomsync import metrics
from roomsync.core.config import Settings
from roomsync.core.exceptions import (
    MatrixAuthenticationError,
    SessionStartError,
    StoreAttachError,
)
from roomsync.credentials import CredentialStore, redact_token
from roomsync.dispatch import ContextDispatcher
from roomsync.event_cache import EventCache
from roomsync.models import Credentials, SessionState, StartErrorKind, StartResult
from roomsync.observers import EventBus, Topic
from roomsync.session import MatrixSession
from roomsync.store import FileStore, LocalStore, MemoryStore
from roomsync.subscriptions import RoomSubscriptionManager

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Credentials], AsyncClient]


def create_client(credentials: Credentials) -> AsyncClient:
    """Build a nio AsyncClient already carrying the stored access token."""
    client = AsyncClient(
        credentials.home_server,
        credentials.user_id,
        config=AsyncClientConfig(store_sync_tokens=False, encryption_enabled=False),
    )
    client.access_token = credentials.access_token
    client.user_id = credentials.user_id
    return client


class SessionLifecycleManager:
    """Owns the session, its local store and the event cache.

    Attributes:
        state: Current SessionState
        session: Active MatrixSession (None before the first start)
        cache: Event cache of the current session
        subscriptions: Room subscriptions of the current session
    """

    def __init__(
        self,
        settings: Settings,
        credential_store: CredentialStore,
        bus: EventBus,
        dispatcher: ContextDispatcher,
        client_factory: ClientFactory = create_client,
    ):
        """Initialize lifecycle manager and restore stored credentials.

        Args:
            settings: Application settings
            credential_store: Persistence for the credential triple
            bus: Event bus for lifecycle notifications
            dispatcher: UI execution context for login/logout notifications
            client_factory: Builds the nio client for a start attempt
        """
        self.settings = settings
        self.credential_store = credential_store
        self.bus = bus
        self.dispatcher = dispatcher
        self.client_factory = client_factory

        self.session: Optional[MatrixSession] = None
        self.store: Optional[LocalStore] = None
        self.subscriptions: Optional[RoomSubscriptionManager] = None
        self.cache = EventCache(
            settings.CACHEABLE_EVENT_TYPES,
            max_events_per_room=settings.EVENT_CACHE_MAX_EVENTS_PER_ROOM,
        )
        self._start_failed = False

        self._credentials = credential_store.load()
        if self._credentials is not None:
            self._set_state(SessionState.NOT_STARTED)
        else:
            self._set_state(SessionState.NEEDS_CREDENTIALS)

    @property
    def credentials(self) -> Optional[Credentials]:
        return self._credentials

    def set_credentials(self, credentials: Optional[Credentials]) -> None:
        """Persist (or clear) credentials.

        Setting credentials while NEEDS_CREDENTIALS promotes the state to
        NOT_STARTED.
        """
        self._credentials = credentials
        if credentials is None:
            self.credential_store.clear()
            return

        self.credential_store.save(credentials)
        if self.state == SessionState.NEEDS_CREDENTIALS:
            self._set_state(SessionState.NOT_STARTED)

    async def login(self, home_server: str, user_id: str, password: str) -> Credentials:
        """Obtain credentials with a password login and store them.

        Raises:
            MatrixAuthenticationError: If the homeserver rejects the login
        """
        client = AsyncClient(home_server, user_id)
        try:
            response = await client.login(password, device_name=self.settings.DEVICE_NAME)
        finally:
            await client.close()

        if not isinstance(response, LoginResponse):
            error_msg = f"Login failed: {response}"
            logger.error(error_msg)
            raise MatrixAuthenticationError(error_msg)

        credentials = Credentials(
            home_server=home_server,
            user_id=response.user_id,
            access_token=response.access_token,
        )
        logger.info(
            f"Fresh login successful for {response.user_id} "
            f"(token: {redact_token(response.access_token)})"
        )
        self.set_credentials(credentials)
        return credentials

    async def start(
        self,
        credentials: Optional[Credentials] = None,
        disable_cache: Optional[bool] = None,
    ) -> StartResult:
        """Start a session: build the client, attach a store, run the initial sync.

        Args:
            credentials: Credentials to use; defaults to the stored ones
            disable_cache: Attach the no-op store; defaults to DISABLE_CACHE

        Returns:
            StartResult; on failure the state stays STARTING and the result
            tells whether retrying makes sense
        """
        retrying = self.state == SessionState.STARTING and self._start_failed
        if self.state != SessionState.NOT_STARTED and not retrying:
            logger.warning(f"start() ignored while session is {self.state.value}")
            return StartResult.failure(
                StartErrorKind.INVALID_STATE, f"session is {self.state.value}"
            )

        credentials = credentials or self._credentials
        if credentials is None:
            return StartResult.failure(StartErrorKind.MISSING_CREDENTIALS, "no credentials")
        if disable_cache is None:
            disable_cache = self.settings.DISABLE_CACHE

        if self.session is not None:
            await self.session.close()

        logger.info(f"Creating client for {credentials.user_id} on {credentials.home_server}")
        client = self.client_factory(credentials)
        session = MatrixSession(client, self.bus, self.settings)
        self.session = session
        self._start_failed = False
        self._set_state(SessionState.STARTING)

        if disable_cache:
            store: LocalStore = MemoryStore()
        else:
            store = FileStore(
                self.settings.STORE_DIR_PATH,
                max_events_per_room=self.settings.STORE_MAX_EVENTS_PER_ROOM,
            )
        self.store = store

        try:
            await session.set_store(store)
        except StoreAttachError as e:
            if self._abandoned(session):
                return await self._abandon_start(session)
            logger.error(f"An error occurred setting the store: {e}")
            self._start_failed = True
            metrics.session_starts_total.labels(result="store_attach_failure").inc()
            return StartResult.failure(StartErrorKind.STORE_ATTACH, str(e), retryable=True)
        if self._abandoned(session):
            return await self._abandon_start(session)

        try:
            await session.start()
        except SessionStartError as e:
            if self._abandoned(session):
                return await self._abandon_start(session)
            logger.error(str(e))
            self._start_failed = True
            metrics.session_starts_total.labels(result="session_start_failure").inc()
            return StartResult.failure(StartErrorKind.SESSION_START, str(e), retryable=True)
        if self._abandoned(session):
            return await self._abandon_start(session)

        self.subscriptions = RoomSubscriptionManager(session, self.cache, self.bus, self.settings)
        self._set_state(SessionState.STARTED)
        metrics.session_starts_total.labels(result="success").inc()

        if self.settings.SYNC_IN_BACKGROUND:
            session.start_background_sync()

        logger.info("Handing off to services subscribers")
        self.dispatcher.post(self.bus.publish, Topic.DID_LOGIN, session)
        return StartResult.success()

    def subscribe_to_room(self, room_id: str) -> bool:
        if self.state != SessionState.STARTED or self.subscriptions is None:
            logger.debug(f"subscribe_to_room({room_id}) ignored while {self.state.value}")
            return False
        return self.subscriptions.subscribe_to_room(room_id)

    def unsubscribe_from_room(self, room_id: str) -> None:
        if self.subscriptions is not None:
            self.subscriptions.unsubscribe_from_room(room_id)

    async def close(self) -> None:
        """Release the client's transport resources. Idempotent."""
        if self.subscriptions is not None:
            await self.subscriptions.close()
        if self.session is not None:
            await self.session.close()

    def logout(self) -> asyncio.Task:
        """Log out: local state is reset immediately, the remote call runs in the background.

        Publishes ``will_logout`` first, clears stored credentials and sets
        NEEDS_CREDENTIALS before returning. The remote logout then runs as
        a task; whatever its outcome, local store data is deleted and
        ``did_logout`` is posted.

        Returns:
            The background task finishing the logout
        """
        self.bus.publish(Topic.WILL_LOGOUT)

        self.credential_store.clear()
        self._credentials = None
        self._start_failed = False
        self._set_state(SessionState.NEEDS_CREDENTIALS)

        session, self.session = self.session, None
        subscriptions, self.subscriptions = self.subscriptions, None
        store, self.store = self.store, None
        self.cache.clear()

        return asyncio.create_task(
            self._finish_logout(session, subscriptions, store), name="matrix-logout"
        )

    async def _finish_logout(
        self,
        session: Optional[MatrixSession],
        subscriptions: Optional[RoomSubscriptionManager],
        store: Optional[LocalStore],
    ) -> None:
        if subscriptions is not None:
            await subscriptions.close()

        if session is None:
            metrics.logouts_total.labels(result="skipped").inc()
        else:
            try:
                confirmed = await session.logout()
                metrics.logouts_total.labels(result="success" if confirmed else "failure").inc()
            except Exception as e:
                logger.error(f"Remote logout failed: {e}")
                metrics.logouts_total.labels(result="failure").inc()
            finally:
                await session.close()

        if store is not None:
            store.delete_all_data()
        # The persistent store is wiped even when the session ran without it
        FileStore(self.settings.STORE_DIR_PATH).delete_all_data()

        self.dispatcher.post(self.bus.publish, Topic.DID_LOGOUT)

    def _abandoned(self, session: MatrixSession) -> bool:
        """True once a logout (or a newer start) replaced this start attempt."""
        return self.session is not session or self.state != SessionState.STARTING

    async def _abandon_start(self, session: MatrixSession) -> StartResult:
        logger.warning("Logged out while the session was starting, discarding it")
        metrics.session_starts_total.labels(result="abandoned").inc()
        if session.store is not None:
            session.store.delete_all_data()
        await session.close()
        return StartResult.failure(StartErrorKind.INVALID_STATE, "logged out during start")

    def _set_state(self, state: SessionState) -> None:
        self.state = state
        metrics.session_state.set(state.metric_value)
        logger.debug(f"Session state -> {state.value}")
