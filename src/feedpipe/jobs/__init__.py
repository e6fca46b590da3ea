"""持久化多步骤任务：事件、步骤账本、重试与并发限制."""
