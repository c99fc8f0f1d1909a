REDIS_META_KEY = "room:meta:{slug}" # room id
REDIS_INVITE_KEY = "room:invite:{code}" # invite code -> room id
REDIS_MEMBERS_KEY = "room:members:{slug}" # room id - hash of contact -> name
REDIS_PREDICTIONS_KEY = "room:predictions:{slug}" # room id - hash of role[:participant] -> value
REDIS_COMMENTS_KEY = "room:comments:{slug}" # room id - list of json comments
REDIS_ACTIONS_KEY = "room:actions:{slug}" # room id - list of json action items

# **Example `room:meta:{id}` hash fields**
# - `room_id` = `{roomId}`
# - `invite_code` = short code, also indexed by `room:invite:{code}`
# - `room_type` = refinement | retro | general
# - `created_at` = ISO timestamp
