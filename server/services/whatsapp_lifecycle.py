import asyncio
import contextlib
import logging
import re
import time
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from core.errors import NotConnectedError, UpstreamError, ValidationError
from core.logging_setup import log_step, log_user

from .formatting import extract_digits
from .integration_store import ConnectionStatus, IntegrationRecord, Provider
from .qr_cache import QrCodeCache
from .whatsapp_gateway import GatewayError, extract_qr_code

logger = logging.getLogger(__name__)

LOG_STEP = "WA-LIFECYCLE"

INSTANCE_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")

ALLOWED_TRANSITIONS = {
    ConnectionStatus.NOT_INITIALIZED: {ConnectionStatus.CONNECTING},
    ConnectionStatus.CONNECTING: {
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.NOT_INITIALIZED,
        ConnectionStatus.ERROR,
    },
    ConnectionStatus.CONNECTED: {
        ConnectionStatus.CONNECTING,
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.NOT_INITIALIZED,
    },
    ConnectionStatus.DISCONNECTED: {
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.NOT_INITIALIZED,
    },
    ConnectionStatus.ERROR: {
        ConnectionStatus.CONNECTING,
        ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.NOT_INITIALIZED,
    },
}


def can_transition(current: ConnectionStatus, new: ConnectionStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


@dataclass
class ConnectionSnapshot:
    connected: bool
    status: ConnectionStatus
    instance_name: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {"connected": self.connected, "status": self.status.value}


class KeyedLock:
    """
    One asyncio.Lock per key, created on first use. Entries are weak and
    drop out once no holder or waiter references the lock.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class InstanceLifecycleManager:
    """
    Drives a user's WhatsApp session from no instance to a connected channel.

    connect() creates the gateway instance and returns straight away; a
    background poll task then follows the gateway until the QR code is
    scanned, caching each fresh QR code for get_qr_code(). check_connection()
    is the synchronous, authoritative variant used by request handlers.

    All writes to a user's integration record happen under that user's lock,
    and a status write never recreates a record that was deleted.
    """

    def __init__(
        self,
        store,
        gateway,
        qr_cache: Optional[QrCodeCache] = None,
        *,
        instance_prefix: str = "secretaria",
        poll_interval: float = 5.0,
        retry_interval: float = 10.0,
        poll_timeout: float = 600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.gateway = gateway
        self.qr_cache = qr_cache if qr_cache is not None else QrCodeCache()
        self.instance_prefix = instance_prefix
        self.poll_interval = poll_interval
        self.retry_interval = retry_interval
        self.poll_timeout = poll_timeout
        self._clock = clock
        self._locks = KeyedLock()
        self._poll_tasks: Dict[str, asyncio.Task] = {}

        with log_step(LOG_STEP):
            logger.debug("InstanceLifecycleManager initialized.")

    def new_instance_name(self, user_id: str) -> str:
        safe_user = INSTANCE_NAME_UNSAFE.sub("", user_id) or "user"
        return f"{self.instance_prefix}-{safe_user}-{int(self._clock() * 1000)}"

    def is_polling(self, instance_name: str) -> bool:
        task = self._poll_tasks.get(instance_name)
        return task is not None and not task.done()

    async def _write_status(
        self, record: IntegrationRecord, new_status: ConnectionStatus
    ) -> Optional[IntegrationRecord]:
        """Caller must hold the user's lock."""
        if record.status == new_status:
            return record
        if not can_transition(record.status, new_status):
            logger.warning(
                f"Refusing status transition {record.status.value} -> {new_status.value}."
            )
            return record

        updated = await self.store.update(
            record.user_id, Provider.MESSAGING, {"status": new_status}
        )
        if updated is not None:
            logger.info(
                f"Status transition {record.status.value} -> {new_status.value}."
            )
        return updated

    async def _reconcile(
        self, user_id: str, instance_name: str, observed: ConnectionStatus
    ) -> Optional[IntegrationRecord]:
        """
        Writes the observed gateway state into the record if it changed.
        Returns None when the record is gone or now belongs to another instance.
        """
        async with self._locks(user_id):
            record = await self.store.find(user_id, Provider.MESSAGING)
            if record is None or record.instance_name != instance_name:
                return None
            return await self._write_status(record, observed)

    async def connect(self, user_id: str) -> IntegrationRecord:
        with log_step(LOG_STEP), log_user(user_id):
            async with self._locks(user_id):
                record = await self.store.find(user_id, Provider.MESSAGING)

                if record is not None and record.status == ConnectionStatus.CONNECTED:
                    logger.info("WhatsApp already connected; nothing to do.")
                    return record

                if record is None or not record.instance_name:
                    instance_name = self.new_instance_name(user_id)
                    record = await self.store.upsert(
                        IntegrationRecord(
                            user_id=user_id,
                            provider=Provider.MESSAGING,
                            instance_name=instance_name,
                            status=ConnectionStatus.CONNECTING,
                        )
                    )
                    logger.info(f"Created integration record for instance {instance_name}.")
                else:
                    record = await self._write_status(record, ConnectionStatus.CONNECTING) or record

                instance_name = record.instance_name

                try:
                    state = await self.gateway.get_connection_state(instance_name)
                    if state == ConnectionStatus.NOT_INITIALIZED:
                        created = await self.gateway.create_instance(instance_name)
                        qr_code = extract_qr_code(created)
                    elif state != ConnectionStatus.CONNECTED:
                        qr_code = await self.gateway.get_qr_code(instance_name)
                    else:
                        qr_code = None
                except UpstreamError as e:
                    logger.error(f"Gateway rejected connect for {instance_name}: {e}")
                    await self._write_status(record, ConnectionStatus.ERROR)
                    raise

                if qr_code:
                    self.qr_cache.set(user_id, qr_code)

                self._ensure_polling(user_id, instance_name)
                return record

    def _ensure_polling(self, user_id: str, instance_name: str) -> bool:
        if self.is_polling(instance_name):
            logger.debug(f"Poll task for {instance_name} already running.")
            return False

        self._poll_tasks[instance_name] = asyncio.create_task(
            self._poll_loop(instance_name, user_id),
            name=f"wa-poll-{instance_name}",
        )
        logger.debug(f"Started poll task for {instance_name}.")
        return True

    async def _poll_loop(self, instance_name: str, user_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_timeout
        delay: Optional[float] = self.poll_interval

        try:
            while delay is not None:
                if loop.time() + delay > deadline:
                    with log_step(LOG_STEP), log_user(user_id, instance_name):
                        logger.info(
                            f"No QR scan within {self.poll_timeout:.0f}s; stopping poll."
                        )
                    self.qr_cache.clear(user_id)
                    break
                await asyncio.sleep(delay)
                delay = await self.poll_status(instance_name, user_id)
        except asyncio.CancelledError:
            with log_step(LOG_STEP), log_user(user_id, instance_name):
                logger.debug("Poll task cancelled.")
            raise
        finally:
            if self._poll_tasks.get(instance_name) is asyncio.current_task():
                del self._poll_tasks[instance_name]

    async def poll_status(self, instance_name: str, user_id: str) -> Optional[float]:
        """
        One poll tick. Returns the delay before the next tick,
        or None when polling for this instance should stop.
        """
        with log_step(LOG_STEP), log_user(user_id, instance_name):
            try:
                state = await self.gateway.get_connection_state(instance_name)
                record = await self._reconcile(user_id, instance_name, state)
                if record is None:
                    logger.info("Integration record removed; stopping poll.")
                    return None

                if state == ConnectionStatus.CONNECTED:
                    self.qr_cache.clear(user_id)
                    logger.info("WhatsApp connected; stopping poll.")
                    return None

                if state == ConnectionStatus.NOT_INITIALIZED:
                    self.qr_cache.clear(user_id)
                    logger.warning("Instance no longer exists on the gateway; stopping poll.")
                    return None

                if state == ConnectionStatus.CONNECTING:
                    qr_code = await self.gateway.get_qr_code(instance_name)
                    if qr_code:
                        self.qr_cache.set(user_id, qr_code)

                return self.poll_interval
            except Exception as e:
                logger.warning(
                    f"Poll failed, retrying in {self.retry_interval:.0f}s: {e}"
                )
                return self.retry_interval

    def get_qr_code(self, user_id: str) -> Optional[str]:
        return self.qr_cache.get(user_id)

    async def check_connection(self, user_id: str) -> ConnectionSnapshot:
        with log_step(LOG_STEP), log_user(user_id):
            record = await self.store.find(user_id, Provider.MESSAGING)
            if record is None or not record.instance_name:
                return ConnectionSnapshot(False, ConnectionStatus.NOT_INITIALIZED)

            instance_name = record.instance_name
            state = await self.gateway.get_connection_state(instance_name)
            reconciled = await self._reconcile(user_id, instance_name, state)
            if reconciled is None:
                return ConnectionSnapshot(False, ConnectionStatus.NOT_INITIALIZED)

            if state == ConnectionStatus.CONNECTED:
                self.qr_cache.clear(user_id)
            elif state == ConnectionStatus.CONNECTING:
                # Poll task is lost on restart; resume it.
                self._ensure_polling(user_id, instance_name)

            return ConnectionSnapshot(
                connected=reconciled.status == ConnectionStatus.CONNECTED,
                status=reconciled.status,
                instance_name=instance_name,
            )

    async def send_message(self, user_id: str, phone: str, text: str) -> Dict[str, Any]:
        snapshot = await self.check_connection(user_id)
        with log_step(LOG_STEP), log_user(user_id, snapshot.instance_name):
            if not snapshot.connected:
                logger.info("Refusing to send: WhatsApp is not connected.")
                raise NotConnectedError("WhatsApp is not connected")

            number = extract_digits(phone)
            if not number:
                raise ValidationError("Phone number must contain digits")

            result = await self.gateway.send_text(snapshot.instance_name, number, text)
            logger.info(f"Message sent to {number}.")
            return result

    async def disconnect(self, user_id: str) -> None:
        snapshot = await self.check_connection(user_id)
        if not snapshot.connected:
            raise NotConnectedError("WhatsApp is not connected")

        instance_name = snapshot.instance_name
        with log_step(LOG_STEP), log_user(user_id, instance_name):
            await self._stop_polling(instance_name)

            try:
                await self.gateway.logout(instance_name)
            except GatewayError as e:
                if not e.is_not_connected:
                    raise
                logger.info("Gateway reports the instance is already logged out.")

            try:
                await self.gateway.delete_instance(instance_name)
            except GatewayError as e:
                logger.warning(f"Could not delete gateway instance: {e}")

            async with self._locks(user_id):
                await self.store.delete(user_id, Provider.MESSAGING)
            self.qr_cache.clear(user_id)
            logger.info("WhatsApp disconnected.")

    async def _stop_polling(self, instance_name: str) -> None:
        task = self._poll_tasks.pop(instance_name, None)
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def shutdown(self) -> None:
        tasks = list(self._poll_tasks.values())
        self._poll_tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        with log_step(LOG_STEP):
            logger.info(f"Stopped {len(tasks)} poll task(s).")
