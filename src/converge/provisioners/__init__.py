"""Provider plugins implementing the create/read/update/delete contract."""

from .base import BaseProvider, ProviderRegistry
from .local import LocalProvider
from .cloudcontrol import CloudControlProvider

__all__ = [
    'BaseProvider',
    'ProviderRegistry',
    'LocalProvider',
    'CloudControlProvider',
]
