"""WhatsApp Business message relay."""
