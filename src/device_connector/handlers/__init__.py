"""
Built-in capabilities and their base topics.

Requests arrive on <base>/post; responses go to <base>.
"""

from __future__ import annotations

from device_connector.core.config_store import ConfigStore
from device_connector.core.dispatcher import Dispatcher, TopicBinding
from device_connector.handlers.apt import AptHandlers
from device_connector.handlers.config import ConfigHandlers
from device_connector.handlers.status import on_status


def register_default_handlers(
    dispatcher: Dispatcher,
    *,
    config_store: ConfigStore,
    apt_root: str = "/etc/apt",
) -> list[TopicBinding]:
    apt = AptHandlers(apt_root)
    cfg = ConfigHandlers(config_store)
    return [
        dispatcher.register_handler("/status", on_status),
        dispatcher.register_handler("/config/set", cfg.on_config_set, serialized=True),
        dispatcher.register_handler("/apt/list", apt.on_packages_list),
        dispatcher.register_handler("/apt/repos/list", apt.on_repos_list),
        dispatcher.register_handler("/apt/repos/add", apt.on_repos_add, serialized=True),
        dispatcher.register_handler("/apt/repos/remove", apt.on_repos_remove, serialized=True),
    ]
