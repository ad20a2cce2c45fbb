"""
One-way vault mirror: remote directory -> staging dir (rsync) -> local vault

The staging copy exists because the final destination may be a cloud-synced
folder that refuses rsync's metadata writes; a plain recursive copy from
staging into it works.
"""
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Optional

from ..config import VaultConfig
from ..core.ssh_manager import SSHManager
from ..exceptions import VaultSyncError
from ..utils.logging import log, vlog, warn

WRITE_PROBE_NAME = ".rsync-test"
PREVIEW_LIMIT = 10
# rsync -v chatter that is not a transferred entry
_SUMMARY_PREFIXES = ("sending", "receiving", "sent", "total", "building")


def changed_entries(dry_run_output: str) -> list[str]:
    """Entries rsync would transfer, from the output of `rsync -av --dry-run`."""
    entries = []
    for line in dry_run_output.splitlines():
        if not line or line[0].isspace():
            continue
        if line.startswith(_SUMMARY_PREFIXES):
            continue
        entries.append(line.rstrip())
    return entries


def rsync_command(cfg: VaultConfig, dry_run: bool) -> list:
    argv = ["rsync", "-avz"]
    argv.append("--dry-run" if dry_run else "--progress")
    argv += ["-e", f"ssh -i {shlex.quote(str(cfg.key_path))}",
             cfg.remote_spec, f"{cfg.staging_dir}/"]
    return argv


def check_local_writable(local_dir: Path):
    """Create *local_dir* and verify files can be written into it."""
    probe = local_dir / WRITE_PROBE_NAME
    try:
        local_dir.mkdir(parents=True, exist_ok=True)
        probe.touch()
    except OSError as exc:
        raise VaultSyncError(
            f"Cannot write to local vault directory {local_dir} ({exc}).\n"
            "The directory may require Full Disk Access: open System Settings → "
            "Privacy & Security → Full Disk Access, add your terminal app and "
            "restart it, or point VAULT_LOCAL_DIR somewhere else."
        ) from exc
    probe.unlink(missing_ok=True)


def check_remote(cfg: VaultConfig,
                 ssh_factory: Callable[..., SSHManager] = SSHManager):
    """Verify the SSH login works and the remote vault path exists."""
    hint = (f"Troubleshooting:\n"
            f"  ssh -i {cfg.key_path} {cfg.ssh_target}\n"
            f"  ssh -i {cfg.key_path} {cfg.ssh_target} 'ls -la {cfg.remote_path}'")
    try:
        with ssh_factory(cfg.ssh_target, key_path=cfg.key_path) as ssh:
            ok = ssh.path_exists(cfg.remote_path)
    except Exception as exc:
        raise VaultSyncError(f"Cannot connect to {cfg.ssh_target}: {exc}\n{hint}") from exc
    if not ok:
        raise VaultSyncError(
            f"Vault path {cfg.remote_path} does not exist on {cfg.ssh_target}\n{hint}")


def _run_rsync(cfg: VaultConfig, dry_run: bool, runner: Callable) -> str:
    argv = rsync_command(cfg, dry_run)
    vlog(f"[vault] {' '.join(argv)}")
    if dry_run:
        result = runner(argv, capture_output=True, text=True, check=False)
        output = (result.stdout or "") + (result.stderr or "")
    else:
        result = runner(argv, check=False)
        output = ""
    if result.returncode != 0:
        raise VaultSyncError(f"rsync exited {result.returncode}\n{output.strip()}")
    return output


def copy_into(src: Path, dst: Path):
    """Merge *src* into *dst*, overwriting files that exist in both."""
    try:
        shutil.copytree(src, dst, dirs_exist_ok=True)
    except shutil.Error as exc:
        # per-file failures (typically metadata) do not undo the copied content
        warn(f"{len(exc.args[0])} file(s) could not be copied completely")


def _confirm(prompt: str, read: Callable[[str], str]) -> bool:
    try:
        reply = read(prompt).strip().lower()
    except (EOFError, KeyboardInterrupt):
        return False
    return reply in ("y", "yes")


def sync_vault(cfg: VaultConfig, assume_yes: bool = False,
               runner: Callable = subprocess.run,
               read: Callable[[str], str] = input,
               ssh_factory: Optional[Callable[..., SSHManager]] = None) -> str:
    """
    Mirror the remote vault into the local vault directory.
    Returns the final one-line outcome; raises ConfigurationError or
    VaultSyncError.
    """
    cfg.require()
    log(f"Remote: {cfg.remote_spec}")
    log(f"Local:  {cfg.local_dir}/")

    check_local_writable(cfg.local_dir)

    log("Testing connection...")
    check_remote(cfg, ssh_factory or SSHManager)
    log("✓ Connection successful")

    log("Checking for changes...")
    cfg.staging_dir.mkdir(parents=True, exist_ok=True)
    entries = changed_entries(_run_rsync(cfg, dry_run=True, runner=runner))
    if not entries:
        return "✓ Already up to date"

    print(f"Found {len(entries)} file(s) to sync:")
    for entry in entries[:PREVIEW_LIMIT]:
        print(f"  • {entry}")
    if len(entries) > PREVIEW_LIMIT:
        print(f"  ... and {len(entries) - PREVIEW_LIMIT} more")

    if not assume_yes and not _confirm("Proceed with sync? [y/N]: ", read):
        return "Sync cancelled"

    log("Syncing to staging directory...")
    _run_rsync(cfg, dry_run=False, runner=runner)

    log("Copying into local vault...")
    copy_into(cfg.staging_dir, cfg.local_dir)
    return f"✓ Vault synced to: {cfg.local_dir}/"
