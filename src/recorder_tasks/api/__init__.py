"""HTTP API：请求/响应模型、服务层与 v1 路由。"""
