"""数据库建表脚本 (知识库 schema)"""
