"""pytest 공통 설정.

설정 모듈이 import 시점에 환경변수를 읽으므로 테스트 모듈보다 먼저 값을 넣는다.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("BATCH_DELAY", "0")
