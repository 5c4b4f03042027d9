"""服务层：消息交换协调器与每日额度。"""
