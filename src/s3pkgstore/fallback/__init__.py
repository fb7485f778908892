from .registry_client import RegistryClient, RemoteTarball

__all__ = ["RegistryClient", "RemoteTarball"]
