"""Lifecycle management of the background impersonation proxy server.

The proxy server runs on its own thread. The controller talks to it only
through a stop event and a single-slot mailbox into which the thread posts
its final outcome exactly once, so no other state is shared between them.
"""

import queue
import threading
from collections.abc import Callable

from icecream import ic

from impersonation_controller import console
from impersonation_controller.dynamiccert import DynamicCertProvider
from impersonation_controller.exceptions import ImpersonationError, ProxyCrashError

# start(stop_event) blocks until stop_event is set, returning None on a clean
# shutdown and raising if the server fails.
StartFunc = Callable[[threading.Event], None]
ProxyFactory = Callable[[int, DynamicCertProvider, DynamicCertProvider], StartFunc]


class ProxyProcess:
    """Starts, monitors and stops the impersonation proxy server.

    At most one server runs per instance. The instance is Running while it
    holds a stop event and a mailbox, and Stopped otherwise.

    Attributes:
        port: Port the server listens on.

    """

    def __init__(
        self,
        factory: ProxyFactory,
        port: int,
        serving_cert_provider: DynamicCertProvider,
        signing_cert_provider: DynamicCertProvider,
    ) -> None:
        self.port = port
        self._factory = factory
        self._serving_cert_provider = serving_cert_provider
        self._signing_cert_provider = signing_cert_provider
        self._stop_event: threading.Event | None = None
        self._mailbox: queue.Queue[BaseException | None] | None = None
        self._mailbox_closed = False

    @property
    def is_running(self) -> bool:
        return self._stop_event is not None

    def ensure_started(self, on_exit: Callable[[], None]) -> None:
        """Start the server unless it is already running and healthy.

        If the server was started earlier but has since posted an outcome,
        it is treated as crashed: it is stopped and the crash is raised so
        that the caller retries and the next call starts a fresh server.

        Args:
            on_exit: Called from the server thread once the server exits, to
                request a re-sync.

        Raises:
            ProxyCrashError: If the running server exited unexpectedly.

        """
        if self._mailbox is not None:
            try:
                running_err = self._mailbox.get_nowait()
            except queue.Empty:
                return

            if running_err is None:
                running_err = ImpersonationError("unexpected shutdown of proxy server")
            # The outcome was consumed, so stopping must not wait for another one.
            self._mailbox_closed = True
            stopping_err = self._stop()
            raise ProxyCrashError([err for err in (running_err, stopping_err) if err is not None])

        console.action(f"Starting impersonation proxy on port {console.highlight(str(self.port))}")
        start = self._factory(self.port, self._serving_cert_provider, self._signing_cert_provider)

        stop_event = threading.Event()
        mailbox: queue.Queue[BaseException | None] = queue.Queue(maxsize=1)

        def run() -> None:
            try:
                outcome: BaseException | None = None
                try:
                    start(stop_event)
                except BaseException as err:  # noqa: BLE001
                    outcome = err
                mailbox.put_nowait(outcome)
            finally:
                on_exit()

        self._stop_event = stop_event
        self._mailbox = mailbox
        self._mailbox_closed = False
        threading.Thread(target=run, name="impersonation-proxy", daemon=True).start()

    def ensure_stopped(self) -> None:
        """Stop the server if it is running, waiting for it to exit.

        Raises:
            Exception: Whatever error the server reported while shutting down.

        """
        err = self._stop()
        if err is not None:
            raise err

    def _stop(self) -> BaseException | None:
        if self._stop_event is None or self._mailbox is None:
            return None

        console.action(f"Stopping impersonation proxy on port {console.highlight(str(self.port))}")
        self._stop_event.set()
        stop_err = None if self._mailbox_closed else self._mailbox.get()
        ic(stop_err)

        self._stop_event = None
        self._mailbox = None
        self._mailbox_closed = False
        return stop_err

    def __repr__(self) -> str:
        return f"ProxyProcess(port={self.port}, running={self.is_running})"
