"""hipstershop - 服务共享的追踪库"""
