"""
服务层模块
账号池、请求调度、上游客户端与日志服务
"""
