import logging
import shlex
import subprocess
from typing import Callable, Iterable, List, Optional

from civitai_downloader.config import ContainerSettings
from civitai_downloader.exceptions import ArchiveError, SupervisorError
from civitai_downloader.models.tasks import FailurePolicy, TaskResult, UserTask
from civitai_downloader.storage import ExportStorage

logger = logging.getLogger(__name__)

IMAGE_PASSES = (True, False)

Runner = Callable[..., subprocess.CompletedProcess]


def build_user_tasks(usernames: Iterable[str], base_models: Iterable[str]) -> List[UserTask]:
    """Return the username-major, base-model-minor download matrix."""
    models = list(base_models)
    return [UserTask(username=username, base_model=base_model) for username in usernames for base_model in models]


class DownloadPipeline:
    """Sequential per-user loop invoking the downloader CLI, then archiving the output tree.

    Download and image invocations follow ``task_policy`` (by default a failure is recorded
    and the loop moves on); archival steps always fail fast.
    """

    def __init__(
        self,
        settings: ContainerSettings,
        storage: Optional[ExportStorage] = None,
        runner: Runner = subprocess.run,
        task_policy: FailurePolicy = FailurePolicy.tolerate,
    ) -> None:
        self.settings = settings
        self.storage = storage or ExportStorage(settings.export_dir)
        self.runner = runner
        self.task_policy = task_policy
        self.base_command = shlex.split(settings.downloader_command)

    def model_command(self, task: UserTask) -> List[str]:
        return [
            *self.base_command,
            "download",
            "--base-models",
            task.base_model,
            "-u",
            task.username,
            "-c",
            str(self.settings.concurrency),
            "--model-info",
            "-y",
            "--config",
            str(self.settings.config_path),
        ]

    def image_command(self, username: str, nsfw: bool) -> List[str]:
        return [
            *self.base_command,
            "images",
            "-u",
            username,
            "-c",
            str(self.settings.concurrency),
            f"--nsfw={'true' if nsfw else 'false'}",
            "--metadata",
            "--config",
            str(self.settings.config_path),
        ]

    def run(self) -> List[TaskResult]:
        usernames = self.settings.username
        if not usernames:
            logger.warning("No usernames configured; set CIVITAI_USERNAME to start downloading.")
            return []

        results: List[TaskResult] = []
        for username in usernames:
            logger.info("Starting download for user: %s", username)
            for task in build_user_tasks([username], self.settings.base_models):
                results.append(self.run_step(f"models {username}/{task.base_model}", self.model_command(task)))
            for nsfw in IMAGE_PASSES:
                results.append(self.run_step(f"images {username} nsfw={nsfw}", self.image_command(username, nsfw)))
            self.archive()

        failed = [result for result in results if not result.ok]
        logger.info("Download loop finished: %d steps, %d failed", len(results), len(failed))
        for result in failed:
            logger.warning("Failed step: %s (%s)", result.label, result.error or f"exit code {result.returncode}")
        return results

    def run_step(self, label: str, command: List[str], policy: Optional[FailurePolicy] = None) -> TaskResult:
        policy = policy or self.task_policy
        result = TaskResult(label=label, command=command)
        logger.debug("Running %s", shlex.join(command))
        try:
            completed = self.runner(command, check=False)
        except OSError as exc:
            result.error = str(exc)
        else:
            result.returncode = completed.returncode

        if not result.ok:
            message = f"Step '{label}' failed: {result.error or f'exit code {result.returncode}'}"
            if policy is FailurePolicy.fail_fast:
                raise SupervisorError(message)
            logger.warning("%s; continuing", message)
        return result

    def archive(self) -> None:
        """Fix permissions, zip the whole tree and fix the archive's permissions and owner."""
        try:
            self.storage.normalize_permissions()
            logger.info("Creating ZIP archive...")
            self.storage.create_archive(self.settings.archive_name, owner=self.settings.archive_owner)
        except ArchiveError as exc:
            raise SupervisorError(str(exc)) from exc
