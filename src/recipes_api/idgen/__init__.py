from recipes_api.idgen.client import IdGeneratorClient

__all__ = ["IdGeneratorClient"]
