"""cellar - 客户端依赖解析与安装编排引擎"""

__version__ = "0.4.0"
