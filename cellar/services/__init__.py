"""服务层：安装会话、单包安装编排与参考协作者实现

- session.py: InstallationSession（注册表、下载队列、锁、批量安装）
- installer/: FormulaInstaller 状态机与安装步骤
- artifacts.py: tar 归档瓶子与源码
- builder.py: 子进程源码构建
- linkage.py: 链接检查与缓存
"""
