"""Stockroom — 在庫引き当て・Webhook 配信・レート制限サービス"""

__version__ = "0.1.0"
