# /app/config/strings.py

# This file contains all user-facing strings, making them easy to manage,
# update, and eventually localize without changing application logic.

# Reply resolution
INVALID_OPTION = "Por favor, selecciona una opción válida."
CHOICE_FALLBACK_FOOTER = "Responde con el número de tu opción."

# Media
MEDIA_FALLBACK = "No pudimos enviar el archivo adjunto. Inténtalo más tarde."

# AI agents
AI_FALLBACK_REPLY = "Lo siento, no pude generar una respuesta."

# Reset command
RESET_PHRASES = ("reset chat", "reiniciar chat", "borrar chat")
RESET_CONFIRMATION = "Tu conversación fue reiniciada. Escribe un mensaje para comenzar de nuevo."

# Notifications sent to the admin / assigned human
HANDOFF_NOTIFICATION_TITLE = "🤖 Nueva transferencia desde agente IA"
HANDOFF_RAW_NOTIFICATION_TITLE = "⚠️ Transferencia de agente IA (datos sin formato)"
ASSIGNMENT_EMAIL_SUBJECT = "Nueva conversación asignada"
ASSIGNMENT_EMAIL_BODY = "Se te asignó la conversación con {address} desde el flujo \"{flow_name}\"."
