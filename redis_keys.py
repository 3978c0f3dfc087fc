REDIS_MESSAGE_KEY = "message:{message_id}" # message id - message hash
REDIS_ROOM_MESSAGES_KEY = "room:messages:{slug}" # room id - sorted set of message ids scored by sequence
REDIS_ROOM_SEQ_KEY = "room:seq:{slug}" # room id - insertion counter
REDIS_ROOM_LAST_TS_KEY = "room:last_ts:{slug}" # room id - createdAt of the newest message
REDIS_ROOM_UNREAD_KEY = "room:unread:{slug}" # room id - set of unread message ids
REDIS_ROOM_PARTICIPANTS_KEY = "room:participants:{slug}" # room id - set of user ids seen in the room
REDIS_USER_ROOMS_KEY = "user:rooms:{user_id}" # user id - set of room ids the user takes part in
REDIS_USER_KEY = "user:{user_id}" # user id - identity hash with last_seen

# **Example `message:{id}` hash fields**
# - `id` = `{messageId}`
# - `room_id`, `sender_id`, `sender_name`, `sender_image`, `message`
# - `created_at` = ISO timestamp (UTC)
# - `seq` = per-room insertion number, breaks createdAt ties
# - `read` = "0" | "1"
# - `read_at` = ISO timestamp or ""
