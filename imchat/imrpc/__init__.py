"""Chat history and conversation list service logic."""