"""
集成测试（integration tests）

说明：
- 该目录下的测试启动本地临时 HTTP server（模拟 Jira REST API 与 webhook 接收端），
  走真实的 HttpClient / SQLite，不依赖外部网络。
"""
