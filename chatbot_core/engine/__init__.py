"""对话轮次编排：用量记录与流式编排。"""
