from ._models import Field, Function


class QueryFunctionName:
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class QueryFunction:
    @staticmethod
    def is_null(field: str) -> Function:
        return Function(name=QueryFunctionName.IS_NULL, args=[Field(path=field)])

    @staticmethod
    def is_not_null(field: str) -> Function:
        return Function(
            name=QueryFunctionName.IS_NOT_NULL, args=[Field(path=field)]
        )
