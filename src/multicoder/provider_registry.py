"""プロバイダ認証の登録簿。プロセス全体のシングルトンは持たず、context ごとに組み立てる。"""

from __future__ import annotations

from multicoder.errors import UnknownProviderError
from multicoder.provider_amazonq import AmazonQAuthenticator
from multicoder.provider_base import ProviderAuthenticator, ProviderDependencies
from multicoder.provider_claude import ClaudeAuthenticator
from multicoder.provider_codex import CodexAuthenticator
from multicoder.provider_gemini import GeminiAuthenticator


class ProviderAuthRegistry:
    def __init__(self, deps: ProviderDependencies, *, register_defaults: bool = True) -> None:
        self.deps = deps
        self._providers: dict[str, ProviderAuthenticator] = {}
        if register_defaults:
            for cls in (ClaudeAuthenticator, GeminiAuthenticator, CodexAuthenticator, AmazonQAuthenticator):
                self.register(cls(deps))

    def register(self, provider: ProviderAuthenticator) -> None:
        self._providers[provider.id] = provider

    def get(self, provider_id: str) -> ProviderAuthenticator:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise UnknownProviderError(provider_id) from None

    def all(self) -> list[ProviderAuthenticator]:
        return list(self._providers.values())
