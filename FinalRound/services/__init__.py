"""
Services - 业务服务层
"""
