"""recorder 任务调度服务：基于租约的分布式任务调度"""

__version__ = "1.0.0"
