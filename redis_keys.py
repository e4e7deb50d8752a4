REDIS_MESSAGES_KEY = "room:messages:{room_id}" # list of JSON message rows, oldest first
REDIS_LAST_MESSAGES_KEY = "user:last_messages:{user_id}" # hash room_id -> latest JSON message row
REDIS_GROUP_MEMBERS_KEY = "group:members:{group_id}" # set of user ids
REDIS_PROFILE_KEY = "profile:{user_id}" # hash - presence columns
REDIS_PROFILES_KEY = "profiles" # set of every user id with a profile hash
REDIS_UNREAD_KEY = "unread:{user_id}:{room_id}" # hash - count, last_sender_id, updated_at
REDIS_UNREAD_ROOMS_KEY = "unread:rooms:{user_id}" # set of room ids with an unread hash

# **Example `room:messages:{id}` list entry**
# - `sender_id` = user id
# - `room_id` = room token
# - `content` = text body
# - `created_at` = ISO timestamp (UTC)
# - `participant1_id` / `participant2_id` = sorted direct-chat participants, null for groups

# **Example `profile:{id}` hash fields**
# - `username` = optional display label
# - `is_online` = "1" or "0"
# - `last_seen_at` = ISO timestamp (UTC)
