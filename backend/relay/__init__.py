"""단일 룸 WebRTC 미디어 릴레이 시그널링 패키지.

Modules:
    engine: 미디어 엔진 계약과 aiortc 바인딩
    session: 세션 상태, 시그널링 채널, 코디네이터
    shared: 시그널링 페이로드 DTO
    config: 환경변수 기반 설정
"""
