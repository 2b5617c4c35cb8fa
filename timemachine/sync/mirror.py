"""
Mirror transport client.

Talks the git wire protocol through dulwich, so any commodity git host
(SSH, HTTP(S)) or a local bare repository can serve as the mirror.
Transport failures are translated into a small error taxonomy; the
private key path is passed to ssh and never logged.
"""

import logging
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import urllib3
from dulwich.client import HTTPUnauthorized, get_transport_and_path
from dulwich.errors import GitProtocolError, HangupException, NotGitRepository
from dulwich.repo import Repo
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

SCP_STYLE = re.compile(r"^[\w.-]+@[\w.-]+:")


class MirrorError(Exception):
    """Raised when the mirror cannot complete an operation."""

    def __init__(self, message: str, address: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.address = address
        self.detail = detail


class AuthenticationError(MirrorError):
    """Raised when the mirror rejects the device's credentials."""
    pass


class NetworkUnavailable(MirrorError):
    """Raised on transient connectivity failures. Retryable."""
    pass


class MirrorNotFound(MirrorError):
    """Raised when the mirror repository does not exist."""
    pass


class PushRejected(MirrorError):
    """Raised when the mirror branch moved since it was read."""

    def __init__(self, message: str, address: Optional[str] = None, remote_head: Optional[str] = None):
        super().__init__(message, address)
        self.remote_head = remote_head


_AUTH_MARKERS = ("permission denied", "publickey", "authentication failed", "host key verification failed")
_NETWORK_MARKERS = (
    "could not resolve",
    "connection refused",
    "connection timed out",
    "network is unreachable",
    "no route to host",
    "connection reset",
    "operation timed out",
)
_NOT_FOUND_MARKERS = ("not found", "does not exist", "does not appear to be a git repository")


def is_ssh_address(address: str) -> bool:
    return address.startswith(("ssh://", "git+ssh://")) or bool(SCP_STYLE.match(address))


def is_http_address(address: str) -> bool:
    return address.startswith(("http://", "https://"))


class MirrorClient:
    """
    Client for a git-protocol mirror.

    Handles:
    - SSH key selection for ssh remotes
    - Retry-configured HTTP pool for http(s) remotes
    - Fast-forward-only ref updates
    - Error translation (auth / network / not found)

    Usage:
        client = MirrorClient("git@github.com:me/openwrt-timemachine-router.git",
                              key_path=Path("/root/.ssh/id_ed25519"))

        head = client.remote_head("main")
        client.push(Path("/root/time-machine"), "main", expected_remote=head, new_head=local)
    """

    def __init__(
        self,
        address: str,
        key_path: Optional[Path] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
    ):
        """
        Initialize mirror client.

        Args:
            address: Mirror location (scp-style, ssh://, http(s):// or a path)
            key_path: Private key for ssh remotes (never logged)
            timeout: Request timeout in seconds for http(s) remotes
            max_retries: HTTP-level retry attempts for transient failures
        """
        self.address = address
        self._key_path = key_path
        self.timeout = timeout
        self.max_retries = max_retries
        self._pool_manager: Optional[urllib3.PoolManager] = None

        if is_http_address(address):
            retry_strategy = Retry(
                total=max_retries,
                backoff_factor=1,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET"],
            )
            self._pool_manager = urllib3.PoolManager(
                retries=retry_strategy,
                timeout=urllib3.Timeout(total=timeout),
            )

        logger.debug(f"Mirror client initialized for {self.address}")

    def __repr__(self) -> str:
        return f"MirrorClient(address='{self.address}')"

    def _transport(self):
        kwargs = {}
        if self._pool_manager is not None:
            kwargs["pool_manager"] = self._pool_manager
        elif is_ssh_address(self.address) and self._key_path is not None:
            kwargs["key_filename"] = str(self._key_path)
        return get_transport_and_path(self.address, **kwargs)

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        """Map transport exceptions onto the mirror error taxonomy."""
        try:
            yield
        except MirrorError:
            raise
        except HTTPUnauthorized as e:
            raise AuthenticationError(
                f"{operation}: mirror rejected credentials", self.address, str(e)
            ) from e
        except NotGitRepository as e:
            raise MirrorNotFound(f"{operation}: no repository at mirror", self.address, str(e)) from e
        except HangupException as e:
            stderr = b" ".join(getattr(e, "stderr_lines", None) or []).decode("utf-8", errors="replace")
            raise self._classify(operation, stderr or str(e)) from e
        except GitProtocolError as e:
            raise self._classify(operation, str(e)) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise NetworkUnavailable(f"{operation}: mirror unreachable", self.address, str(e)) from e

    def _classify(self, operation: str, detail: str) -> MirrorError:
        lowered = detail.lower()
        if any(marker in lowered for marker in _AUTH_MARKERS):
            return AuthenticationError(f"{operation}: mirror rejected credentials", self.address, detail)
        if any(marker in lowered for marker in _NETWORK_MARKERS):
            return NetworkUnavailable(f"{operation}: mirror unreachable", self.address, detail)
        if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
            return MirrorNotFound(f"{operation}: no repository at mirror", self.address, detail)
        return MirrorError(f"{operation} failed", self.address, detail)

    def _progress(self, message) -> None:
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        message = message.strip()
        if message:
            logger.debug(f"mirror: {message}")

    def list_refs(self) -> dict[bytes, bytes]:
        """
        Read the mirror's refs (read-only).

        Raises:
            MirrorError: If the mirror cannot be reached or read
        """
        with self._translate_errors("ls-remote"):
            client, path = self._transport()
            refs = client.get_refs(path)
        return dict(getattr(refs, "refs", refs))

    def remote_head(self, branch: str) -> Optional[str]:
        """Snapshot id at the tip of ``branch`` on the mirror, if any."""
        sha = self.list_refs().get(b"refs/heads/" + branch.encode())
        return sha.decode("ascii") if sha else None

    def push(
        self,
        repo_path: Path,
        branch: str,
        expected_remote: Optional[str],
        new_head: str,
    ) -> None:
        """
        Fast-forward the mirror branch to ``new_head``.

        The update is skipped unless the mirror still holds
        ``expected_remote``; the remote history is never overwritten.

        Raises:
            PushRejected: If the mirror moved since it was read
            MirrorError: On transport failure or a refused update
        """
        ref = b"refs/heads/" + branch.encode()
        seen: dict[str, Optional[str]] = {}

        def update_refs(refs: dict) -> dict:
            current = refs.get(ref)
            seen["remote"] = current.decode("ascii") if current else None
            # Only the snapshot branch is ever sent; other mirror refs are left alone
            if seen["remote"] != expected_remote:
                return {}
            return {ref: new_head.encode("ascii")}

        with self._translate_errors("push"), Repo(str(repo_path)) as repo:
            client, path = self._transport()
            result = client.send_pack(
                path,
                update_refs,
                generate_pack_data=repo.generate_pack_data,
                progress=self._progress,
            )

        if seen.get("remote") != expected_remote:
            raise PushRejected("Mirror moved since it was read", self.address, seen.get("remote"))

        ref_status = getattr(result, "ref_status", None) or {}
        if ref_status.get(ref):
            # Hook or branch protection; the history itself did not move
            raise MirrorError(
                f"Mirror refused update: {ref_status[ref]}", self.address, str(ref_status[ref])
            )

        logger.info(f"Mirror {branch} now at {new_head[:7]}")

    def fetch(self, repo_path: Path) -> dict[bytes, bytes]:
        """
        Download mirror objects into the local store.

        Only objects are added; no local ref is moved here.

        Returns:
            The mirror's refs
        """
        with self._translate_errors("fetch"), Repo(str(repo_path)) as repo:
            client, path = self._transport()
            result = client.fetch(path, repo, progress=self._progress)
        return dict(getattr(result, "refs", result))
