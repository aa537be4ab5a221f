from .comfy_client import AssetReference, ComfyClient

__all__ = ["AssetReference", "ComfyClient"]
