"""
Infrastructure 模块

外部服务客户端（HTTP 基类、PayPal 网关）。
"""
