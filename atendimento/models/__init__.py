from atendimento.models.conversation_snapshot import ConversationSnapshot
