import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Tuple

from google.oauth2 import service_account

from .storage import DRIVE_SCOPES, DriveClient, _safe_int_env, parse_leading_int

logger = logging.getLogger("drivehub.accounts")

DEFAULT_ACCOUNT_COUNT = 2


class DriveConfigurationError(RuntimeError):
    """Raised when an account's environment configuration is unusable."""


class ConfigurationMissing(DriveConfigurationError):
    """The credential or folder variable of an account is absent or empty."""


class ConfigurationMalformed(DriveConfigurationError):
    """The credential bundle of an account is not valid service-account JSON."""


@dataclass(frozen=True)
class AccountDescriptor:
    name: str
    credentials_env: str
    folder_id_env: str


@dataclass(frozen=True)
class ResolvedClient:
    client: DriveClient
    folder_id: str
    account_name: str


def load_accounts(count: Optional[int] = None) -> Tuple[AccountDescriptor, ...]:
    """Build the ordered account registry.

    Account ``i`` (1-based) reads its service-account JSON from
    ``GDRIVE_CREDENTIALS_<i>`` and its folder from ``FOLDER_ID_<i>``.
    """

    if count is None:
        count = _safe_int_env("DRIVE_ACCOUNT_COUNT", DEFAULT_ACCOUNT_COUNT, min_value=0)
    if count < 1:
        logger.warning("account_count_invalid value=%s default=%d", count, DEFAULT_ACCOUNT_COUNT)
        count = DEFAULT_ACCOUNT_COUNT
    return tuple(
        AccountDescriptor(
            name=f"Account {number} (Service Account)",
            credentials_env=f"GDRIVE_CREDENTIALS_{number}",
            folder_id_env=f"FOLDER_ID_{number}",
        )
        for number in range(1, count + 1)
    )


def parse_account_index(value: Any) -> int:
    """Turn a request-supplied index into an int; unparsable input yields 0."""

    parsed = parse_leading_int(value)
    return parsed if parsed is not None else 0


def resolve_client(
    accounts: Sequence[AccountDescriptor],
    index: Any,
    environ: Optional[Mapping[str, str]] = None,
) -> ResolvedClient:
    """Build a fresh Drive client for the account at *index*.

    Out-of-range or non-numeric indices select account 0. Configuration is
    read on every call and nothing is cached between calls.

    Raises:
        ConfigurationMissing: If the folder or credential variable is unset.
        ConfigurationMalformed: If the credential variable cannot be parsed.
    """

    if environ is None:
        environ = os.environ
    position = parse_account_index(index)
    if not 0 <= position < len(accounts):
        position = 0
    account = accounts[position]

    folder_id = environ.get(account.folder_id_env)
    raw_credentials = environ.get(account.credentials_env)
    if not folder_id or not raw_credentials:
        raise ConfigurationMissing(f"Chưa cấu hình biến môi trường cho {account.name}")

    malformed = f"Lỗi format JSON trong biến môi trường {account.credentials_env}"
    try:
        info = json.loads(raw_credentials)
    except ValueError as error:
        raise ConfigurationMalformed(malformed) from error
    if not isinstance(info, dict):
        raise ConfigurationMalformed(malformed)

    try:
        credentials = service_account.Credentials.from_service_account_info(
            info, scopes=DRIVE_SCOPES
        )
    except (ValueError, KeyError) as error:
        logger.warning(
            "credentials_rejected account=%s error=%s", account.name, error
        )
        raise ConfigurationMalformed(malformed) from error

    return ResolvedClient(
        client=DriveClient(credentials),
        folder_id=folder_id,
        account_name=account.name,
    )
