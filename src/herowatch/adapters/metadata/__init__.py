from .http_metadata import HttpMetadataFetcher, metadata_url, parse_metadata

__all__ = ["HttpMetadataFetcher", "metadata_url", "parse_metadata"]
