"""HL Toolkit - Hyperliquid 下单与风控执行层。"""

__version__ = "0.1.0"
