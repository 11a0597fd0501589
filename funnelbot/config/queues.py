REMINDER_QUEUE = "scenario_reminders"
OFFER_EXPIRE_QUEUE = "offer_expiration"
BROADCAST_QUEUE = "distribution_broadcast"
MAINTENANCE_QUEUE = "user_block_check"

ALL_QUEUES = (REMINDER_QUEUE, OFFER_EXPIRE_QUEUE, BROADCAST_QUEUE, MAINTENANCE_QUEUE)
