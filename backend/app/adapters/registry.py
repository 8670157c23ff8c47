from typing import Dict, Type, Optional
from app.adapters.base import BaseAdapter
from app.adapters.replicate import ReplicateAdapter
from app.adapters.kie import KieAdapter
from app.config import settings


class AdapterRegistry:
    _adapters: Dict[str, Type[BaseAdapter]] = {}
    _instances: Dict[str, BaseAdapter] = {}

    @classmethod
    def register(cls, adapter_class: Type[BaseAdapter]):
        cls._adapters[adapter_class.name] = adapter_class
        return adapter_class

    @classmethod
    def api_key_for(cls, name: str) -> str:
        return {
            "replicate": settings.REPLICATE_API_KEY,
            "kie": settings.KIE_API_KEY,
        }.get(name, "")

    @classmethod
    def get_adapter(cls, name: str, api_key: Optional[str] = None, **kwargs) -> Optional[BaseAdapter]:
        if name not in cls._adapters:
            return None

        api_key = api_key if api_key is not None else cls.api_key_for(name)
        cache_key = f"{name}:{api_key[:8]}"
        if cache_key not in cls._instances:
            cls._instances[cache_key] = cls._adapters[name](api_key, **kwargs)

        return cls._instances[cache_key]


AdapterRegistry.register(ReplicateAdapter)
AdapterRegistry.register(KieAdapter)
