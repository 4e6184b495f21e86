"""
Provider catalog.

Static list of chat-completion providers with their display metadata
and token budget policies.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union


class _Unlimited:
    """Sentinel for budgets that are never debited or replenished."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNLIMITED"

    def __reduce__(self):
        return "UNLIMITED"


UNLIMITED = _Unlimited()

Budget = Union[int, _Unlimited]

SIX_HOURS = 6 * 60 * 60


class UnknownProvider(KeyError):
    """Raised when a provider id is not in the catalog."""

    def __init__(self, provider_id: str):
        super().__init__(provider_id)
        self.provider_id = provider_id

    def __str__(self) -> str:
        return f"Unknown provider: {self.provider_id}"


@dataclass(frozen=True)
class BudgetPolicy:
    """Token budget for a single provider."""
    total: Budget
    initial_available: Optional[int] = None
    replenish_interval_seconds: Optional[int] = None

    def __post_init__(self):
        """Validate budget values."""
        if self.total is UNLIMITED:
            if self.initial_available is not None:
                raise ValueError("unlimited budgets cannot set initial_available")
            if self.replenish_interval_seconds is not None:
                raise ValueError("unlimited budgets cannot replenish")
            return

        if isinstance(self.total, bool) or not isinstance(self.total, int):
            raise ValueError("total must be an integer or UNLIMITED")
        if self.total <= 0:
            raise ValueError("total must be > 0")
        if self.initial_available is not None:
            if not 0 <= self.initial_available <= self.total:
                raise ValueError("initial_available must be between 0 and total")
        if self.replenish_interval_seconds is not None and self.replenish_interval_seconds <= 0:
            raise ValueError("replenish_interval_seconds must be > 0")

    @property
    def is_unlimited(self) -> bool:
        return self.total is UNLIMITED

    @property
    def starting_available(self) -> Budget:
        """Tokens available before any persisted state is applied."""
        if self.total is UNLIMITED:
            return UNLIMITED
        if self.initial_available is None:
            return self.total
        return self.initial_available


@dataclass(frozen=True)
class Provider:
    """A configured chat-completion backend."""
    id: str
    display_name: str
    model: str
    budget: BudgetPolicy
    icon: str = ""
    description: str = ""
    max_tokens: Optional[int] = None

    def __post_init__(self):
        if not self.id or not self.id.strip():
            raise ValueError("provider id is required and cannot be empty")
        if self.id == "user":
            raise ValueError("'user' is reserved for human messages")
        if not self.model or not self.model.strip():
            raise ValueError(f"provider {self.id} requires a model")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError(f"max_tokens for {self.id} must be > 0")


class ProviderCatalog:
    """Ordered, immutable collection of providers.

    Catalog order is significant: it breaks ties in the session summary.
    """

    def __init__(self, providers: Iterable[Provider]):
        self._providers: Tuple[Provider, ...] = tuple(providers)
        self._by_id: Dict[str, Provider] = {}
        for provider in self._providers:
            if provider.id in self._by_id:
                raise ValueError(f"Duplicate provider id: {provider.id}")
            self._by_id[provider.id] = provider
        if not self._providers:
            raise ValueError("catalog must contain at least one provider")

    def get(self, provider_id: str) -> Provider:
        """Get a provider by id.

        Raises:
            UnknownProvider: If the id is not in the catalog
        """
        try:
            return self._by_id[provider_id]
        except KeyError:
            raise UnknownProvider(provider_id) from None

    def index(self, provider_id: str) -> int:
        """Position of a provider in catalog order."""
        return self._providers.index(self.get(provider_id))

    def ids(self) -> List[str]:
        return [provider.id for provider in self._providers]

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._by_id

    def __iter__(self) -> Iterator[Provider]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)


# Built-in catalog. Initial availability mirrors a partly used account.
DEFAULT_CATALOG = ProviderCatalog([
    Provider(
        id="gpt-4o",
        display_name="GPT-4o",
        model="openai/gpt-4o",
        icon="icon_gpt.jpg",
        description="OpenAI's flagship multimodal model.",
        budget=BudgetPolicy(total=1000, replenish_interval_seconds=SIX_HOURS),
    ),
    Provider(
        id="claude-3.7-sonnet",
        display_name="Claude 3.7 Sonnet",
        model="anthropic/claude-3.7-sonnet",
        icon="icon_claude.png",
        description="Anthropic's hybrid reasoning model.",
        budget=BudgetPolicy(total=1000, initial_available=850,
                            replenish_interval_seconds=SIX_HOURS),
    ),
    Provider(
        id="gemini-2.0-flash",
        display_name="Gemini 2.0 Flash",
        model="google/gemini-2.0-flash-001",
        icon="icon_gemini.png",
        description="Google's fast general-purpose model.",
        budget=BudgetPolicy(total=300, initial_available=0,
                            replenish_interval_seconds=SIX_HOURS),
    ),
    Provider(
        id="deepseek-r1",
        display_name="Deepseek R-1",
        model="deepseek/deepseek-r1",
        icon="icon_deepseek.jpeg",
        description="DeepSeek's open reasoning model.",
        budget=BudgetPolicy(total=500, replenish_interval_seconds=SIX_HOURS),
    ),
    Provider(
        id="grok-3",
        display_name="Grok 3",
        model="x-ai/grok-3",
        icon="icon_grok.png",
        description="xAI's flagship model.",
        budget=BudgetPolicy(total=750, replenish_interval_seconds=SIX_HOURS),
    ),
    Provider(
        id="llama-3.2",
        display_name="Llama 3.2",
        model="meta-llama/llama-3.2-3b-instruct",
        icon="icon_llama.png",
        description="Meta's small open-weights model.",
        budget=BudgetPolicy(total=500, initial_available=0,
                            replenish_interval_seconds=SIX_HOURS),
    ),
    Provider(
        id="mistral-small",
        display_name="Mistral Small",
        model="mistralai/mistral-small-3.1-24b-instruct:free",
        icon="icon_mistral.png",
        description="Free-tier model without a token limit.",
        budget=BudgetPolicy(total=UNLIMITED),
    ),
])
