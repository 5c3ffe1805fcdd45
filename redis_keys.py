REDIS_ROOM_KEY = "watch:room:{room_id}" # room id - hash with host/episode/viewers/status

REDIS_ROOM_MESSAGE_KEY = "room:message:{message_id}" # message id - room chat message hash
REDIS_ROOM_MESSAGES_KEY = "room:messages:{room_id}" # room id - set of room chat message ids
REDIS_ROOM_MESSAGE_SEQ = "room:message:seq" # counter for room chat message ids

REDIS_MESSAGE_KEY = "chat:message:{message_id}" # message id - global chat message hash
REDIS_MESSAGES_KEY = "chat:messages" # sorted set of global message ids scored by send time (ms)
REDIS_USER_MESSAGES_KEY = "chat:user:{user_id}:messages" # user id - sorted set of that user's global message ids
REDIS_MESSAGE_SEQ = "chat:message:seq" # counter for global chat message ids

# **Example `watch:room:{id}` hash fields**
# - `room_id` = `{roomId}`
# - `host_id` = userId (absent until a host is persisted)
# - `episode_id` = integer
# - `episode` = episode number
# - `current_viewers` = integer, never below zero
# - `status` = `waiting` | `live`
