"""
集成测试（integration tests）

说明：
- 该目录下的测试通过本地临时 HTTP feed server 跑通完整链路（CLI -> 订阅循环 -> 真实 HTTP）。
- 不依赖外部网络。
"""
