"""Provider registry for routing tabs and queue items to the right driver"""

from typing import Dict, List, Optional, Type

from loguru import logger

from quote_automation.browser.interceptor import PAGE_SCRIPT_MODE
from quote_automation.config import Settings

from .base import BaseProvider
from .drivalia_provider import DrivaliaProvider
from .lex_provider import LexProvider


class ProviderRegistry:
    """Registry for provider driver implementations"""

    def __init__(self, settings: Optional[Settings] = None, capture_mode: str = PAGE_SCRIPT_MODE):
        """
        Initialize provider registry

        Args:
            settings: Settings handed to every provider instance
            capture_mode: Response capture mode for every provider instance
        """
        self.settings = settings or Settings()
        self.capture_mode = capture_mode
        self.providers: Dict[str, Type[BaseProvider]] = {}
        self.provider_instances: Dict[str, BaseProvider] = {}
        self._register_defaults()
        logger.info("Provider registry initialized")

    def _register_defaults(self):
        self.register("lex", LexProvider)
        self.register("drivalia", DrivaliaProvider)

    def register(self, name: str, provider_class: Type[BaseProvider]):
        """
        Register a provider implementation

        Args:
            name: Provider identifier
            provider_class: Provider class implementation
        """
        self.providers[name.lower()] = provider_class
        logger.debug(f"Registered provider: {name}")

    @property
    def names(self) -> List[str]:
        return sorted(self.providers)

    def detect_provider(self, url: str) -> Optional[str]:
        """
        Detect which provider a tab URL belongs to

        Args:
            url: Page URL

        Returns:
            Provider name or None
        """
        for name, provider_class in self.providers.items():
            if provider_class.matches_url(url):
                return name
        return None

    def get_provider(self, name: str) -> Optional[BaseProvider]:
        """
        Get provider instance

        Args:
            name: Provider name (case-insensitive)

        Returns:
            Provider instance or None
        """
        name_lower = name.lower()

        if name_lower not in self.providers:
            logger.warning(f"Provider {name} not registered")
            return None

        if name_lower not in self.provider_instances:
            provider_class = self.providers[name_lower]
            self.provider_instances[name_lower] = provider_class(self.settings, self.capture_mode)

        return self.provider_instances[name_lower]
