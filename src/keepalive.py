"""
Decryption session keep-alive.

With a passphrase-protected gpg key, sops can only decrypt while the gpg
agent still caches the passphrase. This background task periodically
signs a throwaway file to refresh that cache and removes the temp files
gpg and sops leave behind. It runs independently of reconciliation and
never raises.
"""

import asyncio
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Optional

from config import DecryptConfig

logger = logging.getLogger(__name__)


def clean_temp_files(directory: str, max_age: float, now: Optional[float] = None) -> int:
    """Delete ``tmp.*`` files in ``directory`` older than ``max_age`` seconds."""
    now = time.time() if now is None else now
    removed = 0
    for path in Path(directory).glob("tmp.*"):
        try:
            if not path.is_file():
                continue
            if now - path.stat().st_mtime <= max_age:
                continue
            path.unlink()
            removed += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")
    return removed


class SessionKeeper:
    """Periodic gpg session refresh and temp cleanup."""

    def __init__(self, config: DecryptConfig):
        self.config = config
        self._shutdown_event = asyncio.Event()
        self.running = False

    async def start(self) -> None:
        """Run until stop() is called. Returns immediately without a passphrase."""
        if not self.config.keepalive_enabled:
            logger.info("No passphrase configured, session keep-alive disabled")
            return
        if self._shutdown_event.is_set():
            logger.info("Session keep-alive stopped before it started")
            return

        self.running = True
        logger.info(
            f"Session keep-alive running every {self.config.keepalive_interval}s"
        )
        while self.running:
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.keepalive_interval,
                )
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Session keep-alive tick failed: {e}", exc_info=True)
        logger.info("Session keep-alive stopped")

    async def stop(self) -> None:
        self.running = False
        self._shutdown_event.set()

    async def tick(self) -> None:
        removed = await asyncio.to_thread(
            clean_temp_files, self.config.tmp_dir, self.config.tmp_cleanup_age
        )
        logger.info(f"Temp cleanup done, removed {removed} files")
        await self.refresh_session()

    async def refresh_session(self) -> bool:
        """Sign a fresh temp file so gpg-agent keeps the passphrase cached."""
        fd, target = tempfile.mkstemp(prefix="tmp.", dir=self.config.tmp_dir)
        os.close(fd)
        try:
            process = await asyncio.create_subprocess_exec(
                self.config.gpg_binary,
                "--batch",
                "--always-trust",
                "--yes",
                "--passphrase-fd",
                "0",
                "--pinentry-mode=loopback",
                "-s",
                target,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate(
                input=(self.config.passphrase + "\n").encode("utf-8")
            )
        except OSError as e:
            logger.error(f"Failed to run {self.config.gpg_binary}: {e}")
            return False
        finally:
            for path in (target, f"{target}.gpg"):
                try:
                    os.unlink(path)
                except FileNotFoundError:
                    pass

        if process.returncode != 0:
            logger.error(
                f"gpg session refresh failed: {stderr.decode('utf-8', errors='replace').strip()}"
            )
            return False
        logger.info("Refreshed gpg session")
        return True
