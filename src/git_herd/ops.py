import json
import logging
import os
from collections.abc import Iterable
from pathlib import Path

from .cancel import CancellationController
from .constants import APP_NAME, DEFAULT_EXPORT_FILE, DEFAULT_REMOTE
from .errors import FatalError, HerdError, SyncError
from .git_wrapper import GitRepo, clone

logger = logging.getLogger(APP_NAME)


def resolve_root(path_str: str) -> Path:
    """Turns a user-supplied path into an absolute, existing directory.

    Args:
        path_str (str): The path as typed; '.' and '~' are expanded.

    Returns:
        Path: The absolute directory path.

    Raises:
        FatalError: If the working directory cannot be determined, or the
            path does not exist or is not a directory.
    """
    try:
        path = Path.cwd() if path_str in ("", ".") else Path(path_str).expanduser()
        path = path.absolute()
    except (OSError, RuntimeError) as e:
        raise FatalError(f"Cannot determine working directory: {e}") from e

    try:
        if not path.is_dir():
            reason = "not a directory" if path.exists() else "no such directory"
            raise FatalError(f"Error in accessing path {path}: {reason}")
    except OSError as e:
        raise FatalError(f"Error in accessing path {path}: {e}") from e

    return path


def export_filename(name: str | None) -> Path:
    """Normalizes an export/import file name, defaulting to 'export.json'."""
    if not name:
        return Path(DEFAULT_EXPORT_FILE)
    if not name.endswith(".json"):
        name += ".json"
    return Path(name)


def collect_remotes(
    repos: Iterable[Path],
    remote: str = DEFAULT_REMOTE,
    controller: CancellationController | None = None,
) -> dict[Path, str | None]:
    """Looks up the URL of ``remote`` for every repository, concurrently.

    Repositories without that remote map to None; they are logged and do not
    abort the lookup.

    Args:
        repos (Iterable[Path]): Repository roots.
        remote (str, optional): The remote name. Defaults to 'origin'.
        controller (CancellationController | None, optional): Runs the lookups.

    Returns:
        dict[Path, str | None]: Remote URL per repository.
    """
    controller = controller or CancellationController()

    def lookup(path: Path) -> str | None:
        try:
            return GitRepo(path, registry=controller.registry).remote_url(remote)
        except (HerdError, ValueError) as e:
            logger.error(f"REMOTE ERROR {path}: no '{remote}' url ({e})")
            return None

    paths = sorted(set(repos))
    with controller.armed():
        tasks = [controller.spawn(f"remote-{p.name}", lookup, p) for p in paths]
        controller.wait_for(tasks)
        controller.check()

    return {path: task.outcome() for path, task in zip(paths, tasks)}


def write_list(dest: Path, repos: Iterable[Path]) -> None:
    """Saves repository paths to ``dest``, one per line.

    Raises:
        FatalError: If the file cannot be written.
    """
    try:
        dest.write_text("".join(f"{path}\n" for path in repos))
    except OSError as e:
        raise FatalError(f"Error in writing to file {dest}: {e}") from e
    logger.info(f"Saved git repository list to file {dest}")


def build_mapping(root: Path, remotes: dict[Path, str | None]) -> dict[str, str]:
    """Builds the ``{relative path: url}`` mapping used by export and import.

    Repositories without a remote URL are left out.
    """
    mapping: dict[str, str] = {}
    for path, url in sorted(remotes.items()):
        if not url:
            logger.warning(f"SKIPPED {path}: no remote url to export.")
            continue
        rel = path.relative_to(root).as_posix() if path != root else "."
        mapping[rel] = url
    return mapping


def export_mapping(
    root: Path,
    repos: Iterable[Path],
    dest: Path,
    remote: str = DEFAULT_REMOTE,
    controller: CancellationController | None = None,
) -> dict[str, str]:
    """Writes the ``{relative path: url}`` mapping for ``repos`` to ``dest``.

    Args:
        root (Path): The scanned root; keys are relative to it.
        repos (Iterable[Path]): Repository roots beneath ``root``.
        dest (Path): The JSON file to write.
        remote (str, optional): The remote whose URL is exported.
        controller (CancellationController | None, optional): Runs the lookups.

    Returns:
        dict[str, str]: The mapping that was written.

    Raises:
        FatalError: If the file cannot be written.
    """
    mapping = build_mapping(root, collect_remotes(repos, remote, controller))
    try:
        dest.write_text(json.dumps(mapping, indent=2) + "\n")
    except OSError as e:
        raise FatalError(f"Error in writing to file {dest}: {e}") from e
    logger.info(f"Exported {len(mapping)} repositories to {dest}")
    return mapping


def load_mapping(source: Path) -> dict[str, str]:
    """Reads a mapping previously written by :func:`export_mapping`.

    Raises:
        FatalError: If the file is missing, is not valid JSON, or is not an
            object of strings.
    """
    try:
        data = json.loads(source.read_text())
    except OSError as e:
        raise FatalError(f"Error in reading file {source}: {e}") from e
    except json.JSONDecodeError as e:
        raise FatalError(f"Error in unmarshalling JSON {source}: {e}") from e

    if not isinstance(data, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in data.items()
    ):
        raise FatalError(f"{source} must map relative paths to remote urls.")
    return data


def _clone_target(root: Path, rel: str) -> Path:
    target = Path(os.path.normpath(root / rel))
    if Path(rel).is_absolute() or not target.is_relative_to(root):
        raise ValueError(f"'{rel}' points outside {root}")
    return target


def import_mapping(
    root: Path,
    mapping: dict[str, str],
    controller: CancellationController | None = None,
    timeout: float | None = None,
) -> dict[str, HerdError]:
    """Clones every entry of ``mapping`` beneath ``root``, concurrently.

    Existing non-empty targets are left alone. Failures are collected and
    returned rather than raised.

    Args:
        root (Path): Directory the relative paths are resolved against.
        mapping (dict[str, str]): Relative path to remote URL.
        controller (CancellationController | None, optional): Runs the clones.
        timeout (float | None, optional): Per-clone timeout in seconds.

    Returns:
        dict[str, HerdError]: Errors keyed by relative path.

    Raises:
        SyncCancelled: If the import was interrupted.
    """
    controller = controller or CancellationController()
    failures: dict[str, HerdError] = {}
    jobs: dict[str, Path] = {}

    for rel, url in sorted(mapping.items()):
        try:
            target = _clone_target(root, rel)
        except ValueError as e:
            failures[rel] = SyncError(root, ["clone", url], str(e))
            continue
        try:
            populated = target.is_dir() and any(target.iterdir())
        except OSError as e:
            failures[rel] = SyncError(
                target, ["clone", url], f"cannot inspect target: {e}"
            )
            continue
        if populated:
            logger.info(f"SKIPPED {target}: already exists.")
            continue
        jobs[rel] = target

    def fetch(rel: str, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        clone(mapping[rel], target, registry=controller.registry, timeout=timeout)
        logger.info(f"Cloned git repo {mapping[rel]}")

    with controller.armed():
        tasks = {
            rel: controller.spawn(f"clone-{target.name}", fetch, rel, target)
            for rel, target in jobs.items()
        }
        controller.wait_for(tasks.values())
        controller.check()

    for rel, task in tasks.items():
        if task.error is None:
            continue
        error = task.error
        if not isinstance(error, HerdError):
            error = SyncError(jobs[rel], ["clone", mapping[rel]], str(error))
        logger.error(f"CLONE ERROR {rel}: {error}")
        failures[rel] = error

    return failures
