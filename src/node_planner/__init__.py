"""Node Planner: 算力预留窗口拆分、到期监控与顺序执行。"""
__version__ = "1.0.0"
