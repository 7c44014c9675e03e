"""
Interactive setup wizard for the remote tabular API.

Prompts for the API username and password once, exchanges them for
bearer tokens, and saves the tokens to ~/.vtrack/credentials/ with
owner-only permissions (0700 dir / 0600 file).

After setup, the sync engine refreshes the access token on its own; the
password is never stored on disk.

Usage:
    python -m vtrack setup
    python -m vtrack.scripts.setup   (direct invocation)

Re-run any time the refresh token is revoked or expires.
"""
import asyncio
import getpass
import sys

from vtrack.config import get_settings
from vtrack.remote.auth import CredentialProvider
from vtrack.sync.errors import SyncError


def run_setup() -> None:
    settings = get_settings()
    auth = CredentialProvider(
        settings.credentials_dir,
        settings.remote_token_url,
        timeout=settings.request_timeout_seconds,
    )

    print("\nVolunteer Tracker — remote sync setup\n")
    print("Your password will NOT be saved to disk.")
    print(f"API tokens will be stored in: {auth._credentials_dir}\n")

    if auth.has_credentials():
        print("An existing credential was found.")
        overwrite = input("Overwrite it with a new login? [y/N] ").strip().lower()
        if overwrite != "y":
            print("Setup cancelled. Existing credential unchanged.")
            sys.exit(0)

    username = input("API username: ").strip()
    if not username:
        print("Error: username cannot be empty.")
        sys.exit(1)

    password = getpass.getpass("API password: ")
    if not password:
        print("Error: password cannot be empty.")
        sys.exit(1)

    print(f"\nAuthenticating against {settings.remote_token_url}...")
    try:
        asyncio.run(auth.authenticate_and_save(username, password))
    except SyncError as exc:
        print(f"\nAuthentication failed: {exc}")
        print("Check your username and password and try again.")
        sys.exit(1)

    print(f"\nTokens saved to {auth._credentials_dir}")
    print(f"   Permissions: dir={oct(auth._credentials_dir.stat().st_mode)[-3:]}")
    print("\nThe sync engine refreshes the token automatically.")
    print("If the login is ever revoked, just re-run:  python -m vtrack setup\n")


if __name__ == "__main__":
    run_setup()
