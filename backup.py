import argparse
import logging
import os
import re
import subprocess
import sys
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

from pydantic import BaseModel

import config
import health
import notifier
import storage
import watcher

__version__ = "0.1.0"

CONFIG_PATH = "/etc/mysql-s3/config.yaml"
MYSQLDUMP_PATH = "/usr/bin/mysqldump"
HEALTH_PORT = 8090
DURATION = "24h"

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Raised when a backup job cannot be completed."""


class DumpUtilityNotFound(BackupError):
    pass


class DumpError(BackupError):
    def __init__(self, returncode: int, output: str):
        super().__init__(f"mysqldump exited with code {returncode}")
        self.returncode = returncode
        self.output = output


class RunResult(BaseModel):
    job_name: str
    artifact_path: str
    key: str
    dump_succeeded: bool = False
    upload_succeeded: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.dump_succeeded and self.upload_succeeded


def run_timestamp(now: Optional[datetime] = None) -> str:
    if now is None:
        now = datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def mask_password(command: List[str]) -> List[str]:
    return ["--password=****" if arg.startswith("--password=") else arg for arg in command]


class Backuper:
    def __init__(
        self,
        mysqldump_path: str = MYSQLDUMP_PATH,
        temp_dir: Optional[str] = None,
        job_notifier: Optional[notifier.Notifier] = None,
        client_factory: Callable = storage.make_s3_client,
    ):
        self._mysqldump_path: str = mysqldump_path
        self._temp_dir: str = temp_dir or tempfile.gettempdir()
        self._notifier: notifier.Notifier = job_notifier or notifier.LogNotifier()
        self._client_factory = client_factory
        self._last_run: Optional[datetime] = None

    def check_dump_utility(self) -> None:
        if not os.path.exists(self._mysqldump_path):
            raise DumpUtilityNotFound(f"mysqldump binary not found at {self._mysqldump_path}")

    def artifact_path(self, job: config.BackupJob, timestamp: str) -> str:
        return os.path.join(self._temp_dir, f"{job.name}-{timestamp}.sql")

    @staticmethod
    def object_key(job: config.BackupJob, timestamp: str) -> str:
        return f"{job.name}/{timestamp}.sql"

    def build_dump_command(self, job: config.BackupJob, artifact: str) -> List[str]:
        cmd = [
            self._mysqldump_path,
            "-h", job.db_host,
            "-P", str(job.db_port),
            "-u", job.db_user,
            f"--password={job.db_password}",
            f"--result-file={artifact}",
            job.db_name if job.db_name else "--all-databases",
        ]
        cmd.extend(job.extra_dump_args)
        return cmd

    @staticmethod
    def dump_environment(job: config.BackupJob) -> dict:
        env = os.environ.copy()
        if job.db_name:
            env["MYSQL_DATABASE"] = job.db_name
        return env

    def prepare_scratch_dir(self) -> None:
        try:
            os.makedirs(self._temp_dir, exist_ok=True)
        except OSError as e:
            raise BackupError(f"Cannot create scratch directory {self._temp_dir}: {e}") from e

    def next_timestamp(self) -> str:
        now = datetime.now(timezone.utc)
        # a second run within the clock resolution must not reuse the key
        if self._last_run is not None and now <= self._last_run:
            now = self._last_run + timedelta(microseconds=1)
        self._last_run = now
        return run_timestamp(now)

    def run_all(self, jobs: Sequence[config.BackupJob]) -> List[RunResult]:
        self.check_dump_utility()
        try:
            self.prepare_scratch_dir()
        except BackupError as e:
            logger.error("%s, skipping this run", e)
            for job in jobs:
                self._notifier.send_error(job.name, str(e))
            return [RunResult(job_name=job.name, artifact_path="", key="", error=str(e)) for job in jobs]

        results = []
        for job in jobs:
            try:
                results.append(self.run_job(job))
            except Exception as e:
                logger.exception("%s: Unexpected error", job.name)
                self._notifier.send_error(job.name, str(e))
                results.append(RunResult(job_name=job.name, artifact_path="", key="", error=str(e)))
        return results

    def run_job(self, job: config.BackupJob) -> RunResult:
        timestamp = self.next_timestamp()
        result = RunResult(
            job_name=job.name,
            artifact_path=self.artifact_path(job, timestamp),
            key=self.object_key(job, timestamp),
        )

        logger.info("%s: Starting backup", job.name)
        try:
            self._create_db_dump(job, result.artifact_path)
            result.dump_succeeded = True
            self._upload_to_s3(job, result)
            result.upload_succeeded = True
        except DumpError as e:
            logger.error("%s: %s", job.name, e)
            if e.output:
                logger.error("%s: mysqldump output:\n%s", job.name, e.output)
            result.error = str(e)
        except (BackupError, storage.UploadError) as e:
            logger.error("%s: %s", job.name, e)
            result.error = str(e)
        finally:
            self._cleanup(job, result.artifact_path)

        if result.succeeded:
            logger.info("%s: Backup complete, uploaded to %s/%s", job.name, job.bucket_name, result.key)
            self._notifier.send_success(result)
        else:
            self._notifier.send_error(job.name, result.error or "backup failed")
        return result

    def _create_db_dump(self, job: config.BackupJob, artifact: str) -> None:
        cmd = self.build_dump_command(job, artifact)
        logger.info("%s: Running %s", job.name, " ".join(mask_password(cmd)))
        try:
            proc = subprocess.run(
                cmd,
                env=self.dump_environment(job),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except OSError as e:
            raise BackupError(f"Cannot run mysqldump: {e}") from e

        if proc.returncode != 0:
            raise DumpError(proc.returncode, (proc.stdout or "").strip())
        logger.info("%s: mysqldump complete", job.name)

    def _upload_to_s3(self, job: config.BackupJob, result: RunResult) -> None:
        logger.info("%s: Uploading to bucket %s", job.name, job.bucket_name)
        try:
            client = self._client_factory(job)
        except Exception as e:
            raise storage.UploadError(f"Cannot create S3 client for {job.endpoint}: {e}") from e
        storage.ensure_bucket(client, job)
        storage.upload_file(client, result.artifact_path, job.bucket_name, result.key)
        logger.info("%s: Upload successful", job.name)

    def _cleanup(self, job: config.BackupJob, artifact: str) -> None:
        try:
            os.remove(artifact)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("%s: Error removing file %s: %s", job.name, artifact, e)


class Scheduler:
    def __init__(
        self,
        store: config.ConfigStore,
        backuper: Backuper,
        interval: float,
        stop_event: Optional[threading.Event] = None,
    ):
        self._store = store
        self._backuper = backuper
        self._interval = interval
        self._stop = stop_event or threading.Event()

    def run_once(self) -> List[RunResult]:
        jobs = self._store.snapshot().backups
        if not jobs:
            logger.warning("No backup jobs configured")
            return []
        results = self._backuper.run_all(jobs)
        failed = [r.job_name for r in results if not r.succeeded]
        if failed:
            logger.warning("Run finished, %d of %d job(s) failed: %s", len(failed), len(results), ", ".join(failed))
        else:
            logger.info("Run finished, %d job(s) succeeded", len(results))
        return results

    def run_forever(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            logger.info("Next run in %s seconds", self._interval)
            self._stop.wait(self._interval)

    def stop(self) -> None:
        self._stop.set()


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: str) -> float:
    """Parse "24h", "1h30m", "45s", "500ms" or a plain number of seconds."""
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        pos = 0
        seconds = 0.0
        for match in _DURATION_RE.finditer(value):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
        if pos == 0 or pos != len(value):
            raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"duration must be positive: {value!r}")
    return seconds


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mysql-s3-backup",
        description="Periodically dump MySQL databases and upload them to S3.",
    )
    parser.add_argument("--env", action="store_true", help="Use environment variables instead of config file")
    parser.add_argument("--config", default=CONFIG_PATH, help="Path to config file")
    parser.add_argument("--duration", type=parse_duration, default=DURATION, help="Duration between backups")
    parser.add_argument("--mysqldump", default=MYSQLDUMP_PATH, help="Path to mysqldump binary")
    parser.add_argument("--port", type=int, default=HEALTH_PORT, help="Port to listen on for health checks")
    parser.add_argument(
        "--health",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Enable health checks",
    )
    parser.add_argument("--scratch-dir", default=None, help="Directory for dump files before upload")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("-v", "--version", action="version", version=__version__)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    logger.info("Starting mysql-s3 backup version %s", __version__)
    logger.info("Schedule set for every %s seconds", args.duration)

    signature = None
    try:
        if args.env:
            logger.info("Using environment variables for config")
            store = config.ConfigStore(config.config_from_env())
        else:
            logger.info("Using config file %s", args.config)
            signature = watcher.file_signature(args.config)
            store = config.ConfigStore(config.load_config(args.config), config_path=args.config)
    except config.ConfigError as e:
        logger.critical("%s", e)
        return 1

    liveness = notifier.LivenessNotifier()
    backuper = Backuper(
        mysqldump_path=args.mysqldump,
        temp_dir=args.scratch_dir,
        job_notifier=notifier.MultiNotifier([notifier.LogNotifier(), liveness]),
    )
    try:
        backuper.check_dump_utility()
        backuper.prepare_scratch_dir()
    except BackupError as e:
        logger.critical("%s", e)
        return 1

    if args.health:
        try:
            health.start_health_server(liveness, args.port)
        except OSError as e:
            logger.critical("Cannot listen for health checks on port %s: %s", args.port, e)
            return 1

    if not args.env:
        watcher.ConfigWatcher(store, store.config_path, signature=signature).start()

    scheduler = Scheduler(store, backuper, args.duration)
    try:
        scheduler.run_forever()
    except DumpUtilityNotFound as e:
        logger.critical("%s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")
    return 0


if __name__ == "__main__":
    sys.exit(main())
