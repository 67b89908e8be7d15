import logging
import os
import threading
from typing import Optional, Tuple

import config

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0

Signature = Optional[Tuple[int, int]]

_UNSET = object()


def file_signature(path: str) -> Signature:
    try:
        st = os.stat(path)
    except OSError as e:
        logger.debug("stat %s failed: %s", path, e)
        return None
    return st.st_mtime_ns, st.st_size


class ConfigWatcher(threading.Thread):
    """Reloads the config store whenever the config file is modified.

    Modification is detected by polling the file's mtime and size. A config
    that fails to parse is logged and the previous one stays active.

    Pass the ``signature`` taken right before the store's config was loaded,
    so that an edit made in between is still picked up.
    """

    def __init__(
        self,
        store: config.ConfigStore,
        config_path: str,
        poll_interval: float = POLL_INTERVAL,
        signature=_UNSET,
    ):
        super().__init__(name="config-watcher", daemon=True)
        self._store = store
        self._config_path = config_path
        self._poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._signature: Signature = file_signature(config_path) if signature is _UNSET else signature
        if file_signature(config_path) is None:
            logger.error("Cannot watch config file %s for changes, keeping current config", config_path)
        else:
            logger.info("Watching config file %s for changes", config_path)

    def check(self) -> bool:
        signature = file_signature(self._config_path)
        if signature is None:
            if self._signature is not None:
                logger.error("Config file %s disappeared, keeping current config", self._config_path)
            self._signature = None
            return False
        if signature == self._signature:
            return False

        self._signature = signature
        logger.info("Config file changed, reloading")
        try:
            self._store.reload()
        except config.ConfigError as e:
            logger.error("Reload failed, keeping previous config: %s", e)
            return False
        return True

    def run(self) -> None:
        while not self._stop_event.wait(self._poll_interval):
            self.check()

    def stop(self) -> None:
        self._stop_event.set()
