"""命令行入口模块。"""
