"""Loader subpackage: tokenizer adapters."""

from lmengine.loader.protocol import TokenizerProtocol

__all__ = ["TokenizerProtocol"]
