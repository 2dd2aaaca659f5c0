"""核心领域模型：包定义、版本、安装树布局、回执、锁与异常"""
