"""
集成测试（integration tests）

说明：
- 该目录下的测试通过本地临时 HTTP server 模拟上游平台与下游 webhook，走真实的 HttpClient 网络链路。
- 不访问公网；端口由系统分配。
"""
