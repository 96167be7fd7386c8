"""エラー定義。

すべて `MulticoderError`（`RuntimeError` 派生）から派生する。
`str(err)` はユーザー向けの1行メッセージ。`path` などは診断用の補足情報。
"""

from __future__ import annotations

from pathlib import Path


class MulticoderError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        provider_id: str | None = None,
        path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.path = path


class UnknownProviderError(MulticoderError):
    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Unknown provider: {provider_id}", provider_id=provider_id)


class CredentialNotFoundError(MulticoderError):
    def __init__(self, provider_id: str, profile_name: str) -> None:
        super().__init__(
            f"No credentials found for {provider_id} in profile '{profile_name}'. "
            f"Run `multicoder login {provider_id} --profile {profile_name}`.",
            provider_id=provider_id,
        )
        self.profile_name = profile_name


class CredentialExpiredError(MulticoderError):
    def __init__(self, provider_id: str, profile_name: str, *, path: Path | None = None) -> None:
        super().__init__(
            f"Credentials for {provider_id} in profile '{profile_name}' have expired. "
            f"Run `multicoder login {provider_id} --profile {profile_name}` to re-authenticate.",
            provider_id=provider_id,
            path=path,
        )
        self.profile_name = profile_name


class MalformedCredentialFileError(MulticoderError):
    def __init__(self, provider_id: str, path: Path, reason: str) -> None:
        super().__init__(
            f"Credential file for {provider_id} is malformed ({reason}). Re-authenticate to replace it.",
            provider_id=provider_id,
            path=path,
        )
        self.reason = reason


class UnsupportedPlatformOperationError(MulticoderError):
    pass


class ExternalProcessFailureError(MulticoderError):
    def __init__(
        self,
        message: str,
        *,
        provider_id: str | None = None,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, provider_id=provider_id)
        self.returncode = returncode
        self.stderr = stderr


class OAuthTimeoutError(ExternalProcessFailureError):
    def __init__(self, provider_id: str, path: Path, timeout_seconds: float) -> None:
        super().__init__(
            f"Timed out after {timeout_seconds:g}s waiting for {provider_id} to write {path.name}. "
            "Complete the browser login and try again.",
            provider_id=provider_id,
        )
        self.path = path


class ProfileNotFoundError(MulticoderError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Profile '{name}' not found")
        self.profile_name = name


class ProfileExistsError(MulticoderError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Profile '{name}' already exists")
        self.profile_name = name


class InvalidInputError(MulticoderError):
    pass
