"""On-device photo model host: model cache, inference sessions and transform pipelines."""

__version__ = "0.1.0"
