"""
Browser launching for the forwarded URL
"""
import subprocess
import sys
import webbrowser

from ..utils.logging import vlog


def open_url(url: str) -> bool:
    """Open *url* with the default handler. Returns False if nothing opened it."""
    vlog(f"[browser] opening {url}")
    return webbrowser.open(url)


def watch_command(app: str, url: str, platform: str = sys.platform) -> list:
    """Command that opens a fresh *app* instance on *url* and blocks until it quits."""
    if platform == "darwin":
        return ["open", "-n", "-a", app, "-W", url]
    return [app, url]


def open_and_wait(app: str, url: str) -> int:
    """Run the browser in the foreground; returns its exit code."""
    argv = watch_command(app, url)
    vlog(f"[browser] {' '.join(argv)}")
    return subprocess.run(argv, check=False).returncode
